from pydantic import BaseModel


class BackupRequest(BaseModel):
    passphrase: str


class RelocateRequest(BaseModel):
    old_root: str
    new_root: str


class CleanupNoteOut(BaseModel):
    path: str
    error: str


class RestoreOut(BaseModel):
    rollback_file_path: str | None
    cleanup: list[CleanupNoteOut] = []


class RelocationFailureOut(BaseModel):
    storage_path: str
    error: str


class RelocationOut(BaseModel):
    moved: int
    already_present: int
    missing_source: int
    failed: list[RelocationFailureOut] = []


class RetentionOut(BaseModel):
    messages_deleted: int
    orphan_attachments_deleted: int
    orphan_files_deleted: int
    rooms_evaluated: int
    rooms_with_retention: int
    failed_rooms: list[str] = []
    cleanup: list[CleanupNoteOut] = []
