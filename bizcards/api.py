"""FastAPI application exposing employee records, settings and deployments."""
from __future__ import annotations

import logging
import os
from functools import partial
from typing import Dict, List, Optional
from urllib.parse import quote

import anyio
from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Query, Response, UploadFile, status
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from jinja2 import TemplateError
from pydantic import BaseModel, Field, field_validator

from .config import SiteConfig, load_site_config, resolve_config_path
from .database import (
    ACCESS_TOKEN_KEY,
    BRANCH_KEY,
    DEPLOYMENT_ENABLED_KEY,
    REPOSITORY_URL_KEY,
    Database,
    protected_setting_keys,
    resolve_database_path,
)
from .deployments import DeploymentPipeline
from .errors import (
    ConfigurationError,
    DeploymentError,
    DeploymentInProgressError,
    NoDataError,
)
from .models import SystemSetting, UserRecord
from .photos import PHOTO_URL_PREFIX, PhotoError, PhotoLibrary, PhotoTooLargeError
from .publisher import validate_repository_url
from .security import AdminTokenGuard, guard_from_env, mask_secret

logger = logging.getLogger("bizcards.api")

TOKEN_PREFIXES = ("ghp_", "github_pat_")
MAX_BATCH_PHOTOS = 10


class UserCreate(BaseModel):
    employee_id: str = Field(..., min_length=1, max_length=50)
    full_name: str = Field(..., min_length=1, max_length=100)
    title: str = Field(..., min_length=1, max_length=100)
    department: str = Field(..., min_length=1, max_length=100)
    unit: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=20)
    address: Optional[str] = Field(default=None, max_length=255)
    linkedin_url: Optional[str] = Field(default=None, max_length=255)
    github_url: Optional[str] = Field(default=None, max_length=255)
    photo_url: Optional[str] = Field(default=None, max_length=255)


class UserUpdate(BaseModel):
    employee_id: Optional[str] = Field(default=None, min_length=1, max_length=50)
    full_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    department: Optional[str] = Field(default=None, min_length=1, max_length=100)
    unit: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, min_length=3, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=20)
    address: Optional[str] = Field(default=None, max_length=255)
    linkedin_url: Optional[str] = Field(default=None, max_length=255)
    github_url: Optional[str] = Field(default=None, max_length=255)
    photo_url: Optional[str] = Field(default=None, max_length=255)


class SettingUpdate(BaseModel):
    value: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=255)


class GitHubConfigRequest(BaseModel):
    repository_url: str = Field(..., min_length=1, max_length=500)
    access_token: str = Field(..., min_length=40, max_length=100)
    branch: Optional[str] = Field(default=None, min_length=1, max_length=100)

    @field_validator("repository_url")
    @classmethod
    def _validate_repository_url(cls, value: str) -> str:
        stripped = value.strip()
        try:
            validate_repository_url(stripped)
        except ConfigurationError as exc:
            raise ValueError(str(exc)) from None
        if "github.com" not in stripped:
            raise ValueError("Repository URL must be a GitHub URL")
        return stripped

    @field_validator("access_token")
    @classmethod
    def _validate_access_token(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped.startswith(TOKEN_PREFIXES):
            raise ValueError("Access token must be a valid GitHub Personal Access Token")
        return stripped

    @field_validator("branch")
    @classmethod
    def _validate_branch(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped or stripped.startswith("-") or any(char.isspace() for char in stripped):
            raise ValueError("Branch must be a valid git branch name")
        return stripped


def setting_to_response(setting: SystemSetting) -> Dict[str, object]:
    value = setting.value
    if setting.key in protected_setting_keys():
        value = mask_secret(value)
    return {
        "key": setting.key,
        "value": value,
        "description": setting.description,
        "updated_at": setting.updated_at.isoformat(),
    }


def _vcard_disposition(record: UserRecord) -> str:
    filename = f"{record.full_name}.vcf"
    return f"attachment; filename=\"{record.employee_id}.vcf\"; filename*=UTF-8''{quote(filename, safe='')}"


def _deployment_status_code(exc: DeploymentError) -> int:
    if isinstance(exc, DeploymentInProgressError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (ConfigurationError, NoDataError)):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    *,
    database: Database | None = None,
    site_config: SiteConfig | None = None,
    pipeline: DeploymentPipeline | None = None,
    photo_library: PhotoLibrary | None = None,
    auth: AdminTokenGuard | None = None,
    initialize_database: bool = False,
) -> FastAPI:
    """Instantiate the admin API."""

    if database is None:
        database = Database(resolve_database_path(os.getenv("BIZCARDS_DB_PATH")))
        database.initialize()
    elif initialize_database:
        database.initialize()

    if site_config is None:
        site_config = load_site_config(resolve_config_path(os.getenv("BIZCARDS_CONFIG")))

    if pipeline is None:
        pipeline = DeploymentPipeline(database, database, site_config)

    if photo_library is None:
        photo_library = PhotoLibrary(site_config.photo_dir)

    if auth is None:
        auth = guard_from_env()

    app = FastAPI(
        title="Digital Business Cards Admin",
        description="Manage employee business cards and publish them as a static site",
        version="1.0.0",
    )
    app.state.database = database
    app.state.pipeline = pipeline

    try:
        photo_library.directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("Photo directory %s is not available: %s", photo_library.directory, exc)
    if photo_library.directory.is_dir():
        app.mount(
            PHOTO_URL_PREFIX.rstrip("/"),
            StaticFiles(directory=str(photo_library.directory)),
            name="photos",
        )

    def get_db() -> Database:
        return database

    def get_user_or_404(employee_id: str, db: Database = Depends(get_db)) -> UserRecord:
        record = db.get_user(employee_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return record

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    dependencies = [Depends(auth)] if auth is not None else []
    router = APIRouter(prefix="/api", dependencies=dependencies)

    # Users -------------------------------------------------------------

    @router.get("/users")
    async def list_users(
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
        search: Optional[str] = Query(default=None),
        department: Optional[str] = Query(default=None),
        unit: Optional[str] = Query(default=None),
        db: Database = Depends(get_db),
    ) -> Dict[str, object]:
        records, total = db.list_users(
            page=page, limit=limit, search=search, department=department, unit=unit
        )
        return {
            "users": [record.to_dict() for record in records],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "pages": (total + limit - 1) // limit,
            },
        }

    @router.get("/users/search/{query}")
    async def search_users(query: str, db: Database = Depends(get_db)) -> List[Dict[str, object]]:
        return [record.to_dict() for record in db.search_users(query)]

    @router.get("/users/{employee_id}")
    async def read_user(record: UserRecord = Depends(get_user_or_404)) -> Dict[str, object]:
        return record.to_dict()

    @router.post("/users", status_code=status.HTTP_201_CREATED)
    async def create_user(payload: UserCreate, db: Database = Depends(get_db)) -> Dict[str, object]:
        if db.get_user(payload.employee_id) is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="A user with that employee ID already exists",
            )
        try:
            record = db.create_user(**payload.model_dump())
        except ValueError as exc:
            code = status.HTTP_409_CONFLICT if "already exists" in str(exc) else status.HTTP_400_BAD_REQUEST
            raise HTTPException(status_code=code, detail=str(exc)) from exc
        return {"message": "User created successfully", "user": record.to_dict()}

    @router.put("/users/{employee_id}")
    async def update_user(
        payload: UserUpdate,
        record: UserRecord = Depends(get_user_or_404),
        db: Database = Depends(get_db),
    ) -> Dict[str, object]:
        try:
            updated = db.update_user(record.employee_id, **payload.model_dump(exclude_unset=True))
        except ValueError as exc:
            code = status.HTTP_409_CONFLICT if "already exists" in str(exc) else status.HTTP_400_BAD_REQUEST
            raise HTTPException(status_code=code, detail=str(exc)) from exc
        if updated is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return {"message": "User updated successfully", "user": updated.to_dict()}

    @router.delete("/users/{employee_id}")
    async def delete_user(
        record: UserRecord = Depends(get_user_or_404),
        db: Database = Depends(get_db),
    ) -> Dict[str, str]:
        db.delete_user(record.employee_id)
        return {"message": "User deleted successfully"}

    # Settings ----------------------------------------------------------

    @router.get("/settings")
    async def list_settings(db: Database = Depends(get_db)) -> Dict[str, object]:
        settings: Dict[str, object] = {}
        for setting in db.list_settings():
            view = setting_to_response(setting)
            settings[setting.key] = {"value": view["value"], "description": setting.description}
        return settings

    @router.get("/settings/github/status")
    async def github_status(db: Database = Depends(get_db)) -> Dict[str, object]:
        try:
            config = db.get_github_config()
        except ConfigurationError as exc:
            return {
                "is_configured": False,
                "repository_url": "configured" if db.get_setting(REPOSITORY_URL_KEY) else "not configured",
                "access_token": "unreadable",
                "branch": db.get_setting(BRANCH_KEY) or "main",
                "error": str(exc),
            }
        return {
            "is_configured": config.is_configured,
            "repository_url": "configured" if config.repository_url else "not configured",
            "access_token": "configured" if config.access_token else "not configured",
            "branch": config.branch,
        }

    @router.post("/settings/github")
    async def configure_github(payload: GitHubConfigRequest, db: Database = Depends(get_db)) -> Dict[str, object]:
        values: Dict[str, Optional[str]] = {
            REPOSITORY_URL_KEY: payload.repository_url,
            ACCESS_TOKEN_KEY: payload.access_token,
            DEPLOYMENT_ENABLED_KEY: "true",
        }
        if payload.branch:
            values[BRANCH_KEY] = payload.branch
        try:
            db.set_settings(
                values,
                descriptions={
                    REPOSITORY_URL_KEY: "GitHub Repository URL for deployment",
                    ACCESS_TOKEN_KEY: "GitHub Personal Access Token for deployment",
                    DEPLOYMENT_ENABLED_KEY: "Whether deployment functionality is enabled",
                    BRANCH_KEY: "Branch the generated site is pushed to",
                },
            )
        except RuntimeError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        logger.info("GitHub configuration updated")
        return {"message": "GitHub configuration updated successfully", "is_configured": True}

    @router.delete("/settings/github")
    async def reset_github(db: Database = Depends(get_db)) -> Dict[str, str]:
        db.set_settings(
            {REPOSITORY_URL_KEY: "", ACCESS_TOKEN_KEY: "", DEPLOYMENT_ENABLED_KEY: "false"}
        )
        logger.info("GitHub configuration reset")
        return {"message": "GitHub configuration reset successfully"}

    @router.post("/settings/github/test")
    async def test_github(db: Database = Depends(get_db)) -> Dict[str, str]:
        try:
            config = db.get_github_config()
        except ConfigurationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        if not config.is_configured:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="GitHub configuration is not complete",
            )
        return {"message": "GitHub configuration test passed", "status": "success"}

    @router.get("/settings/{key}")
    async def read_setting(key: str, db: Database = Depends(get_db)) -> Dict[str, object]:
        setting = db.get_setting_row(key)
        if setting is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Setting not found")
        return setting_to_response(setting)

    @router.put("/settings/{key}")
    async def update_setting(key: str, payload: SettingUpdate, db: Database = Depends(get_db)) -> Dict[str, object]:
        if key in protected_setting_keys():
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="This setting cannot be updated directly",
            )
        if key == REPOSITORY_URL_KEY and payload.value:
            try:
                validate_repository_url(payload.value)
            except ConfigurationError as exc:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        setting = db.set_setting(key, payload.value, payload.description)
        return {"message": "Setting updated successfully", "setting": setting_to_response(setting)}

    # Deployment --------------------------------------------------------

    @router.get("/deploy/status")
    async def deployment_status() -> Dict[str, object]:
        return pipeline.status()

    @router.post("/deploy/execute")
    async def execute_deployment() -> Dict[str, object]:
        outcome = await anyio.to_thread.run_sync(pipeline.run)
        return {"message": "Deployment completed successfully", **outcome.to_dict()}

    @router.get("/deploy/preview")
    async def deployment_preview() -> Dict[str, object]:
        preview = pipeline.preview()
        if not preview["total_users"]:
            return {"message": "No users found", "total_users": 0, "users": [], "structure": {}}
        return {"message": "Deployment preview generated", **preview}

    @router.post("/deploy/test-connection")
    async def test_connection() -> Dict[str, object]:
        result = await anyio.to_thread.run_sync(pipeline.test_connection)
        return {"message": "GitHub connection test completed", **result}

    # Templates ---------------------------------------------------------

    @router.get("/template/generate/{employee_id}", response_class=HTMLResponse)
    async def generate_html(record: UserRecord = Depends(get_user_or_404)) -> HTMLResponse:
        try:
            html = pipeline.builder.render_html(record, base_url=pipeline.base_url())
        except TemplateError as exc:
            logger.error("Error generating template for %s: %s", record.employee_id, exc)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to generate business card",
            ) from exc
        return HTMLResponse(html)

    @router.get("/template/vcard/{employee_id}")
    async def generate_vcard(record: UserRecord = Depends(get_user_or_404)) -> Response:
        vcard = pipeline.builder.render_vcard(record, base_url=pipeline.base_url())
        return Response(
            content=vcard,
            media_type="text/vcard; charset=utf-8",
            headers={"Content-Disposition": _vcard_disposition(record)},
        )

    @router.get("/template/preview/{employee_id}", response_class=HTMLResponse)
    async def preview_html(record: UserRecord = Depends(get_user_or_404)) -> HTMLResponse:
        try:
            html = pipeline.builder.render_preview(
                record,
                base_url=pipeline.base_url(),
                vcard_href=f"/api/template/vcard/{quote(record.employee_id, safe='')}",
            )
        except TemplateError as exc:
            logger.error("Error generating preview for %s: %s", record.employee_id, exc)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to generate preview",
            ) from exc
        return HTMLResponse(html)

    @router.post("/template/generate-all")
    async def generate_all(db: Database = Depends(get_db)) -> Dict[str, object]:
        records = db.list_all_records()
        if not records:
            return {
                "message": "No users found",
                "total_users": 0,
                "generated": 0,
                "failed": 0,
                "results": [],
                "errors": [],
            }

        outcomes = pipeline.builder.render_all(records, base_url=pipeline.base_url())
        results = [
            {
                "employee_id": item.employee_id,
                "full_name": item.full_name,
                "files": {
                    "html": f"{item.employee_id}/index.html",
                    "vcard": f"{item.employee_id}/contact.vcf",
                },
                "status": "success",
            }
            for item in outcomes
            if item.succeeded
        ]
        errors = [
            {"employee_id": item.employee_id, "full_name": item.full_name, "error": item.error}
            for item in outcomes
            if not item.succeeded
        ]
        return {
            "message": "Batch generation completed",
            "total_users": len(records),
            "generated": len(results),
            "failed": len(errors),
            "results": results,
            "errors": errors,
        }

    # Uploads -----------------------------------------------------------

    @router.post("/upload/photo")
    async def upload_photo(
        photo: UploadFile = File(...),
        employee_id: Optional[str] = Form(default=None),
        db: Database = Depends(get_db),
    ) -> Dict[str, object]:
        record: Optional[UserRecord] = None
        if employee_id is not None:
            if not employee_id.strip():
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Employee ID cannot be empty")
            record = db.get_user(employee_id)
            if record is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

        data = await photo.read(photo_library.max_bytes + 1)
        try:
            stored = await anyio.to_thread.run_sync(
                partial(photo_library.save, data, content_type=photo.content_type)
            )
        except PhotoTooLargeError as exc:
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(exc)) from exc
        except PhotoError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

        response: Dict[str, object] = {
            "message": "Photo uploaded successfully",
            "photo_url": stored.photo_url,
            "filename": stored.filename,
            "file_size_kb": stored.file_size_kb,
        }
        if record is not None:
            updated = db.update_user(record.employee_id, photo_url=stored.photo_url)
            response["user"] = updated.to_dict() if updated is not None else None
        return response

    @router.post("/upload/photos/batch")
    async def upload_photos(photos: List[UploadFile] = File(...)) -> Dict[str, object]:
        if len(photos) > MAX_BATCH_PHOTOS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"At most {MAX_BATCH_PHOTOS} photos can be uploaded at once",
            )

        results: List[Dict[str, object]] = []
        errors: List[Dict[str, object]] = []
        for upload in photos:
            data = await upload.read(photo_library.max_bytes + 1)
            try:
                stored = await anyio.to_thread.run_sync(
                    partial(photo_library.save, data, content_type=upload.content_type)
                )
            except PhotoError as exc:
                logger.warning("Rejected photo %s: %s", upload.filename, exc)
                errors.append({"original_name": upload.filename, "error": str(exc)})
                continue
            results.append(
                {
                    "original_name": upload.filename,
                    "photo_url": stored.photo_url,
                    "file_size_kb": stored.file_size_kb,
                    "status": "success",
                }
            )

        return {
            "message": "Batch photo upload completed",
            "processed": len(results),
            "failed": len(errors),
            "results": results,
            "errors": errors,
        }

    @router.delete("/upload/photo/{filename}")
    async def delete_photo(filename: str) -> Dict[str, str]:
        try:
            deleted = photo_library.delete(filename)
        except PhotoError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        if not deleted:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Photo file not found")
        return {"message": "Photo deleted successfully"}

    @router.get("/upload/photo/{filename}/info")
    async def photo_info(filename: str) -> Dict[str, object]:
        try:
            info = photo_library.info(filename)
        except PhotoError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        if info is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Photo file not found")
        return info

    app.include_router(router)

    @app.exception_handler(DeploymentError)
    async def handle_deployment_error(_: object, exc: DeploymentError):
        code = _deployment_status_code(exc)
        detail = str(exc)
        if code == status.HTTP_500_INTERNAL_SERVER_ERROR:
            detail = f"Deployment failed during {exc.phase}: {exc}"
        return JSONResponse(status_code=code, content={"detail": detail, "phase": exc.phase})

    return app


__all__ = ["create_app", "GitHubConfigRequest", "UserCreate", "UserUpdate"]
