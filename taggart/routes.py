import json
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from . import bulk, catalog, filters, lifecycle, maintenance
from .config import ConfigStore, Settings, TagAliasGroup
from .errors import ValidationError
from .lifecycle import LifecycleManager

router = APIRouter(prefix="/api")


# --- Dependencies ---

def get_db(request: Request):
    db = request.app.state.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_config_store(request: Request) -> ConfigStore:
    return request.app.state.config_store


def get_settings(request: Request) -> Settings:
    return request.app.state.config_store.current


def get_lifecycle(request: Request, settings: Settings = Depends(get_settings)) -> LifecycleManager:
    return LifecycleManager(settings, request.app.state.media_processor, request.app.state.thumbnail_renderer)


# --- Pydantic Models ---

class RenameRequest(BaseModel):
    new_filename: str

class TagRequest(BaseModel):
    category: str
    value: str

class DescriptionRequest(BaseModel):
    description: str

class UploadFromUrlRequest(BaseModel):
    file_url: str
    filename: Optional[str] = None

class SettingsRequest(BaseModel):
    database_path: str
    upload_dir: str
    server_port: int
    instance_name: str = "Taggart"
    gallery_size: str = "400px"
    items_per_page: int = 100

class ThumbnailRequest(BaseModel):
    action: str
    file_id: Optional[int] = None
    timestamp: Optional[str] = None


_alias_list = TypeAdapter(List[TagAliasGroup])


# --- Browsing ---

@router.get("/files")
def api_browse(page: int = Query(1, ge=1), db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    return filters.browse(db, settings, page)


@router.get("/files/untagged")
def api_untagged(page: int = Query(1, ge=1), db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    return filters.list_untagged(db, settings, page)


@router.get("/tag/{filter_path:path}")
def api_filter(filter_path: str, page: int = Query(1, ge=1), db: Session = Depends(get_db),
               settings: Settings = Depends(get_settings)):
    pairs = filters.parse_filter_path(filter_path)
    return filters.filter_files(db, settings, pairs, page)


@router.get("/tags")
def api_tags(db: Session = Depends(get_db)):
    return catalog.tag_counts(db)


@router.get("/search")
def api_search(q: str = Query(""), db: Session = Depends(get_db)):
    query = q.strip()
    files = catalog.search_files(db, query) if query else []
    return {"query": query, "files": files}


# --- Single File ---

@router.get("/file/{file_id}")
def api_file(file_id: int, db: Session = Depends(get_db)):
    record = catalog.require_file(db, file_id, with_tags=True)
    return {"file": record, "categories": sorted(record.tags)}


@router.post("/file/{file_id}/tag")
def api_tag_file(file_id: int, request: TagRequest, db: Session = Depends(get_db)):
    result = lifecycle.tag_file(db, file_id, request.category, request.value)
    message = f"Tag '{result.category}: {result.value}' added"
    if result.copied_from_previous:
        message = f"Tag '{result.category}: {result.value}' copied from previous file"
    return {"message": message, "tag": result}


@router.post("/file/{file_id}/tag/{category}/{value}/delete")
def api_untag_file(file_id: int, category: str, value: str, db: Session = Depends(get_db)):
    catalog.require_file(db, file_id)
    removed = lifecycle.untag_file(db, file_id, category, value)
    return {"removed": removed}


@router.post("/file/{file_id}/description")
def api_update_description(file_id: int, request: DescriptionRequest, db: Session = Depends(get_db)):
    return {"description": lifecycle.update_description(db, file_id, request.description)}


@router.post("/file/{file_id}/rename")
def api_rename(file_id: int, request: RenameRequest, db: Session = Depends(get_db),
               manager: LifecycleManager = Depends(get_lifecycle)):
    return manager.rename(db, file_id, request.new_filename)


@router.post("/file/{file_id}/delete")
def api_delete(file_id: int, db: Session = Depends(get_db), manager: LifecycleManager = Depends(get_lifecycle)):
    return manager.delete(db, file_id)


# --- Uploads ---

@router.post("/upload", status_code=201)
async def api_upload(files: List[UploadFile] = File(...), db: Session = Depends(get_db),
                     manager: LifecycleManager = Depends(get_lifecycle)):
    """Stores each file in turn; the first failure stops the batch."""
    uploaded = []
    warnings = []
    for upload in files:
        try:
            result = await run_in_threadpool(manager.upload, db, upload.file, upload.filename or "")
        finally:
            await upload.close()
        uploaded.append(result.file)
        if result.warning:
            warnings.append(result.warning)
    return {"files": uploaded, "warning": "; ".join(warnings) or None}


@router.post("/upload-url", status_code=201)
def api_upload_from_url(request: UploadFromUrlRequest, db: Session = Depends(get_db),
                        manager: LifecycleManager = Depends(get_lifecycle)):
    return manager.upload_from_url(db, request.file_url, request.filename)


# --- Bulk Editing ---

@router.get("/bulk-tag")
def api_bulk_tag_form(db: Session = Depends(get_db)):
    return {"categories": catalog.category_names(db), "recent_files": catalog.recent_files(db, 20)}


@router.post("/bulk-tag")
def api_bulk_tag(request: bulk.BulkTagRequest, db: Session = Depends(get_db)):
    result = bulk.run_bulk_tag(db, request)
    return {"message": result.message, "file_ids": [f.id for f in result.files]}


# --- Administration ---

@router.get("/admin")
def api_admin(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    return {
        "config": settings.model_dump(mode="json"),
        "orphans": maintenance.list_orphans(db, settings.upload_root),
        "missing_thumbnails": maintenance.missing_thumbnails(db, settings),
    }


@router.post("/admin/settings")
def api_save_settings(request: SettingsRequest, store: ConfigStore = Depends(get_config_store)):
    # Aliases are edited separately and carried over unchanged.
    updated = Settings.model_validate({**store.current.model_dump(), **request.model_dump()})
    needs_restart = store.save(updated)
    message = "Settings saved successfully!"
    if needs_restart:
        message = "Settings saved successfully! Please restart the server for database/port changes to take effect."
    return {"message": message, "needs_restart": needs_restart}


@router.post("/admin/aliases")
def api_save_aliases(aliases_json: str = Form(""), store: ConfigStore = Depends(get_config_store)):
    try:
        groups = _alias_list.validate_python(json.loads(aliases_json)) if aliases_json.strip() else []
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise ValidationError(f"invalid aliases JSON: {e}") from e
    store.save_aliases(groups)
    return {"message": "Tag aliases saved successfully!", "tag_aliases": groups}


@router.post("/admin/reload")
def api_reload_config(store: ConfigStore = Depends(get_config_store)):
    settings = store.reload()
    return {"message": "Configuration reloaded.", "config": settings.model_dump(mode="json")}


@router.post("/admin/backup")
def api_backup(settings: Settings = Depends(get_settings)):
    path = maintenance.backup_database(settings.database_path)
    return {"message": "Database backup created successfully!", "path": path}


@router.post("/admin/vacuum")
def api_vacuum(request: Request):
    maintenance.vacuum_database(request.app.state.engine)
    return {"message": "Database vacuumed successfully!"}


@router.post("/thumbnails/generate")
def api_generate_thumbnails(body: ThumbnailRequest, request: Request, db: Session = Depends(get_db),
                            settings: Settings = Depends(get_settings)):
    renderer = request.app.state.thumbnail_renderer
    if body.action == "generate_all":
        report = maintenance.generate_missing_thumbnails(db, settings, renderer)
        return {"message": f"Generated {report.generated} thumbnails", "failures": report.failures}
    if body.action == "generate_single":
        if body.file_id is None:
            raise ValidationError("file_id is required for generate_single")
        timestamp = (body.timestamp or "").strip() or "00:00:05"
        record = maintenance.generate_thumbnail_at(db, settings, renderer, body.file_id, timestamp)
        return {"message": f"Thumbnail generated for file {record.id} at {timestamp}"}
    raise ValidationError(f"unknown thumbnail action: '{body.action}'")
