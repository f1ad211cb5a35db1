"""End-to-end tests for the admin HTTP API."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from bizcards.api import create_app
from bizcards.config import PACKAGE_DIR, SiteConfig
from bizcards.database import ACCESS_TOKEN_KEY, LAST_DEPLOYMENT_KEY, REPOSITORY_URL_KEY, Database
from bizcards.deployments import DeploymentPipeline
from bizcards.publisher import Publisher
from bizcards.security import AdminTokenGuard
from bizcards.staging import StagingArea

from conftest import TEST_REPOSITORY, TEST_SECRET, TEST_TOKEN, RecordingRunner, fixed_clock

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 64

EMPLOYEE = {
    "employee_id": "e001",
    "full_name": "Alice Smith",
    "title": "Engineer",
    "department": "R&D",
    "unit": "Platform",
    "email": "alice@example.com",
    "phone": "+886 2 1234 5678",
}


class AdminAPITests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        base = Path(self._tempdir.name)
        (base / "photos").mkdir()
        self.database = Database(base / "bizcards.sqlite3", secret_key=TEST_SECRET)
        self.database.initialize()
        self.site_config = SiteConfig(
            template_dir=PACKAGE_DIR / "templates",
            logo_path=PACKAGE_DIR / "assets" / "logo.svg",
            photo_dir=base / "photos",
            staging_dir=base / "deploy",
        )
        self.runner = RecordingRunner()
        self.pipeline = DeploymentPipeline(
            self.database,
            self.database,
            self.site_config,
            publisher=Publisher(self.runner, now=fixed_clock),
            now=fixed_clock,
        )

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def _client(self, auth: AdminTokenGuard | None = None) -> TestClient:
        app = create_app(
            database=self.database,
            site_config=self.site_config,
            pipeline=self.pipeline,
            auth=auth,
        )
        return TestClient(app)

    def _configure_github(self, client: TestClient) -> None:
        response = client.post(
            "/api/settings/github",
            json={"repository_url": TEST_REPOSITORY, "access_token": TEST_TOKEN},
        )
        self.assertEqual(response.status_code, 200, response.text)

    def test_user_lifecycle(self) -> None:
        with self._client() as client:
            created = client.post("/api/users", json=EMPLOYEE)
            self.assertEqual(created.status_code, 201, created.text)
            self.assertEqual(created.json()["user"]["employee_id"], "E001")

            duplicate = client.post("/api/users", json=EMPLOYEE)
            self.assertEqual(duplicate.status_code, 409)

            fetched = client.get("/api/users/e001")
            self.assertEqual(fetched.status_code, 200)
            self.assertEqual(fetched.json()["email"], "alice@example.com")

            listing = client.get("/api/users", params={"limit": 10, "department": "r&d"})
            self.assertEqual(listing.status_code, 200)
            self.assertEqual(listing.json()["pagination"], {"total": 1, "page": 1, "limit": 10, "pages": 1})

            found = client.get("/api/users/search/alice")
            self.assertEqual([item["employee_id"] for item in found.json()], ["E001"])

            updated = client.put("/api/users/E001", json={"title": "Staff Engineer"})
            self.assertEqual(updated.status_code, 200, updated.text)
            self.assertEqual(updated.json()["user"]["title"], "Staff Engineer")

            deleted = client.delete("/api/users/E001")
            self.assertEqual(deleted.status_code, 200)
            self.assertEqual(client.get("/api/users/E001").status_code, 404)

    def test_invalid_user_payloads(self) -> None:
        with self._client() as client:
            bad_email = client.post("/api/users", json={**EMPLOYEE, "email": "nope"})
            self.assertEqual(bad_email.status_code, 400)
            self.assertIn("email", bad_email.json()["detail"])

            missing = client.post("/api/users", json={"employee_id": "E002"})
            self.assertEqual(missing.status_code, 422)

            too_many = client.get("/api/users", params={"limit": 101})
            self.assertEqual(too_many.status_code, 422)

            self.assertEqual(client.put("/api/users/E404", json={"title": "x"}).status_code, 404)

    def test_github_configuration_masks_token(self) -> None:
        with self._client() as client:
            self._configure_github(client)

            status = client.get("/api/settings/github/status").json()
            self.assertTrue(status["is_configured"])
            self.assertEqual(status["access_token"], "configured")

            settings = client.get("/api/settings")
            self.assertEqual(settings.status_code, 200)
            self.assertNotIn(TEST_TOKEN, settings.text)
            self.assertEqual(settings.json()[ACCESS_TOKEN_KEY]["value"], "***")
            self.assertEqual(settings.json()["deployment_enabled"]["value"], "true")

            single = client.get(f"/api/settings/{ACCESS_TOKEN_KEY}")
            self.assertNotIn(TEST_TOKEN, single.text)

            forbidden = client.put(f"/api/settings/{ACCESS_TOKEN_KEY}", json={"value": "ghp_other"})
            self.assertEqual(forbidden.status_code, 403)
            self.assertEqual(self.database.get_setting(ACCESS_TOKEN_KEY), TEST_TOKEN)

            self.assertEqual(client.post("/api/settings/github/test").status_code, 200)

            reset = client.delete("/api/settings/github")
            self.assertEqual(reset.status_code, 200)
            self.assertFalse(self.database.get_github_config().is_configured)
            self.assertFalse(self.database.is_deployment_enabled())
            self.assertEqual(client.post("/api/settings/github/test").status_code, 400)

    def test_github_configuration_validation(self) -> None:
        with self._client() as client:
            gitlab = client.post(
                "/api/settings/github",
                json={"repository_url": "https://gitlab.com/a/b.git", "access_token": TEST_TOKEN},
            )
            self.assertEqual(gitlab.status_code, 422)

            wrong_prefix = client.post(
                "/api/settings/github",
                json={"repository_url": TEST_REPOSITORY, "access_token": "xyz_" + "a" * 40},
            )
            self.assertEqual(wrong_prefix.status_code, 422)

            too_short = client.post(
                "/api/settings/github",
                json={"repository_url": TEST_REPOSITORY, "access_token": "ghp_short"},
            )
            self.assertEqual(too_short.status_code, 422)
            self.assertIsNone(self.database.get_setting(ACCESS_TOKEN_KEY))

    def test_generic_settings(self) -> None:
        with self._client() as client:
            self.assertEqual(client.get("/api/settings/site_base_url").status_code, 404)

            saved = client.put(
                "/api/settings/site_base_url",
                json={"value": "https://cards.example.com", "description": "Public URL"},
            )
            self.assertEqual(saved.status_code, 200, saved.text)
            self.assertEqual(client.get("/api/settings/site_base_url").json()["value"], "https://cards.example.com")

    def test_deploy_requires_configuration(self) -> None:
        with self._client() as client:
            response = client.post("/api/deploy/execute")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["phase"], "validating_config")
        self.assertEqual(self.runner.calls, [])

    def test_deploy_requires_records(self) -> None:
        with self._client() as client:
            self._configure_github(client)
            response = client.post("/api/deploy/execute")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "No users found to deploy")

    def test_deploy_execute_returns_report(self) -> None:
        with self._client() as client:
            self._configure_github(client)
            client.post("/api/users", json=EMPLOYEE)

            response = client.post("/api/deploy/execute")
            self.assertEqual(response.status_code, 200, response.text)
            payload = response.json()
            self.assertEqual(payload["message"], "Deployment completed successfully")
            self.assertEqual(payload["summary"]["total_users"], 1)
            self.assertEqual(payload["summary"]["files_generated"], 3)
            self.assertEqual(payload["details"][0]["url"], "/E001/")
            self.assertNotIn(TEST_TOKEN, response.text)

            status = client.get("/api/deploy/status").json()
            self.assertEqual(status["state"], "idle")
            self.assertEqual(status["last_deployment"], self.database.get_setting(LAST_DEPLOYMENT_KEY))
            self.assertNotIn(TEST_TOKEN, str(status))

    def test_deploy_publish_failure_is_500_with_phase(self) -> None:
        self.runner = RecordingRunner(failures={"push": (128, f"denied for {TEST_TOKEN}")})
        self.pipeline = DeploymentPipeline(
            self.database,
            self.database,
            self.site_config,
            publisher=Publisher(self.runner, now=fixed_clock),
            now=fixed_clock,
        )
        with self._client() as client:
            self._configure_github(client)
            client.post("/api/users", json=EMPLOYEE)
            response = client.post("/api/deploy/execute")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["phase"], "push")
        self.assertIn("Deployment failed during push", response.json()["detail"])
        self.assertNotIn(TEST_TOKEN, response.text)

    def test_concurrent_deploy_is_conflict(self) -> None:
        with self._client() as client:
            self._configure_github(client)
            client.post("/api/users", json=EMPLOYEE)
            with StagingArea(self.site_config.staging_dir).exclusive():
                response = client.post("/api/deploy/execute")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"], "A deployment is already in progress")

    def test_deploy_preview_and_connection_test(self) -> None:
        with self._client() as client:
            empty = client.get("/api/deploy/preview").json()
            self.assertEqual(empty["users"], [])

            self._configure_github(client)
            client.post("/api/users", json=EMPLOYEE)
            preview = client.get("/api/deploy/preview").json()
            self.assertEqual(preview["total_users"], 1)
            self.assertIn("E001", preview["structure"]["users"])

            connection = client.post("/api/deploy/test-connection")
            self.assertEqual(connection.status_code, 200)
            self.assertEqual(connection.json()["status"], "success")
            self.assertEqual(self.runner.commands[-1][:2], ["ls-remote", "--heads"])

    def test_template_endpoints(self) -> None:
        with self._client() as client:
            client.post("/api/users", json={**EMPLOYEE, "full_name": "Alice <b>Smith</b>"})

            page = client.get("/api/template/generate/E001")
            self.assertEqual(page.status_code, 200)
            self.assertTrue(page.headers["content-type"].startswith("text/html"))
            self.assertIn("Alice &lt;b&gt;Smith&lt;/b&gt;", page.text)

            card = client.get("/api/template/vcard/E001")
            self.assertEqual(card.status_code, 200)
            self.assertTrue(card.headers["content-type"].startswith("text/vcard"))
            self.assertIn("attachment;", card.headers["content-disposition"])
            self.assertTrue(card.text.startswith("BEGIN:VCARD\nVERSION:3.0"))

            self.assertEqual(client.get("/api/template/vcard/E404").status_code, 404)

    def test_settings_and_status_survive_a_rotated_secret(self) -> None:
        with self._client() as client:
            self._configure_github(client)
            client.post("/api/users", json=EMPLOYEE)

        self.database = Database(self.database.path, secret_key="rotated-secret")
        self.pipeline = DeploymentPipeline(
            self.database,
            self.database,
            self.site_config,
            publisher=Publisher(self.runner, now=fixed_clock),
            now=fixed_clock,
        )
        with self._client() as client:
            settings = client.get("/api/settings")
            self.assertEqual(settings.status_code, 200, settings.text)
            self.assertEqual(settings.json()[ACCESS_TOKEN_KEY]["value"], "***")

            github = client.get("/api/settings/github/status")
            self.assertEqual(github.status_code, 200)
            self.assertFalse(github.json()["is_configured"])
            self.assertEqual(github.json()["access_token"], "unreadable")

            status = client.get("/api/deploy/status")
            self.assertEqual(status.status_code, 200, status.text)
            self.assertIn("could not be decrypted", status.json()["configuration_error"])

            check = client.post("/api/settings/github/test")
            self.assertEqual(check.status_code, 400)
            self.assertNotIn(TEST_TOKEN, check.text)

            response = client.post("/api/deploy/execute")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["phase"], "validating_config")
        self.assertEqual(self.runner.calls, [])
        self.assertFalse(self.site_config.staging_dir.exists())
        self.assertNotIn(TEST_TOKEN, response.text)

    def test_repository_url_setting_must_be_http(self) -> None:
        with self._client() as client:
            rejected = client.put(
                f"/api/settings/{REPOSITORY_URL_KEY}",
                json={"value": "git@github.com:example/cards.git"},
            )
            self.assertEqual(rejected.status_code, 400)
            self.assertIsNone(self.database.get_setting(REPOSITORY_URL_KEY))

            accepted = client.put(f"/api/settings/{REPOSITORY_URL_KEY}", json={"value": TEST_REPOSITORY})
            self.assertEqual(accepted.status_code, 200)

    def test_photo_upload_lifecycle(self) -> None:
        with self._client() as client:
            client.post("/api/users", json=EMPLOYEE)

            uploaded = client.post(
                "/api/upload/photo",
                files={"photo": ("alice.jpg", JPEG_BYTES, "image/jpeg")},
                data={"employee_id": "e001"},
            )
            self.assertEqual(uploaded.status_code, 200, uploaded.text)
            payload = uploaded.json()
            photo_url = payload["photo_url"]
            self.assertTrue(photo_url.startswith("/uploads/photos/photo-"))
            self.assertEqual(payload["user"]["photo_url"], photo_url)
            self.assertEqual(self.database.get_user("E001").photo_url, photo_url)

            served = client.get(photo_url)
            self.assertEqual(served.status_code, 200)
            self.assertEqual(served.content, JPEG_BYTES)

            filename = payload["filename"]
            info = client.get(f"/api/upload/photo/{filename}/info")
            self.assertEqual(info.status_code, 200)
            self.assertEqual(info.json()["file_size_bytes"], len(JPEG_BYTES))

            self.assertEqual(client.delete(f"/api/upload/photo/{filename}").status_code, 200)
            self.assertEqual(client.delete(f"/api/upload/photo/{filename}").status_code, 404)
            self.assertEqual(client.get("/api/upload/photo/bad..name.jpg/info").status_code, 400)

    def test_photo_upload_rejections(self) -> None:
        with self._client() as client:
            wrong_type = client.post(
                "/api/upload/photo",
                files={"photo": ("logo.png", b"\x89PNG\r\n\x1a\n", "image/png")},
            )
            self.assertEqual(wrong_type.status_code, 400)

            unknown_user = client.post(
                "/api/upload/photo",
                files={"photo": ("alice.jpg", JPEG_BYTES, "image/jpeg")},
                data={"employee_id": "E404"},
            )
            self.assertEqual(unknown_user.status_code, 404)

        self.assertEqual(list(self.site_config.photo_dir.iterdir()), [])

    def test_batch_photo_upload_reports_each_file(self) -> None:
        with self._client() as client:
            response = client.post(
                "/api/upload/photos/batch",
                files=[
                    ("photos", ("a.jpg", JPEG_BYTES, "image/jpeg")),
                    ("photos", ("b.png", b"\x89PNG\r\n\x1a\n", "image/png")),
                ],
            )

        self.assertEqual(response.status_code, 200, response.text)
        payload = response.json()
        self.assertEqual((payload["processed"], payload["failed"]), (1, 1))
        self.assertEqual(payload["results"][0]["original_name"], "a.jpg")
        self.assertEqual(payload["errors"][0]["original_name"], "b.png")

    def test_template_preview_and_generate_all(self) -> None:
        with self._client() as client:
            empty = client.post("/api/template/generate-all")
            self.assertEqual(empty.json()["generated"], 0)

            client.post("/api/users", json={**EMPLOYEE, "photo_url": "/uploads/photos/alice.jpg"})
            client.post("/api/users", json={**EMPLOYEE, "employee_id": "E002", "email": "bob@example.com"})

            preview = client.get("/api/template/preview/E001")
            self.assertEqual(preview.status_code, 200)
            self.assertIn('src="/uploads/photos/alice.jpg"', preview.text)
            self.assertIn("/api/template/vcard/E001", preview.text)
            self.assertEqual(client.get("/api/template/preview/E404").status_code, 404)

            generated = client.post("/api/template/generate-all")
            self.assertEqual(generated.status_code, 200)
            payload = generated.json()
            self.assertEqual((payload["total_users"], payload["generated"], payload["failed"]), (2, 2, 0))
            self.assertEqual(payload["results"][0]["files"]["html"], "E001/index.html")
        self.assertFalse(self.site_config.staging_dir.exists())

    def test_bearer_tokens_guard_api_routes(self) -> None:
        with self._client(auth=AdminTokenGuard(["admin-token"])) as client:
            self.assertEqual(client.get("/health").status_code, 200)
            self.assertEqual(client.get("/api/users").status_code, 401)
            wrong = client.get("/api/users", headers={"Authorization": "Bearer nope"})
            self.assertEqual(wrong.status_code, 403)
            ok = client.get("/api/users", headers={"Authorization": "Bearer admin-token"})
            self.assertEqual(ok.status_code, 200)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
