import hmac
import logging
from contextlib import contextmanager

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Response, UploadFile, status

from chitchat.config import settings
from chitchat.errors import (
    AuthenticationError,
    FilesystemError,
    FormatError,
    MaintenanceBusyError,
    StoreBusyError,
    ValidationError,
)
from chitchat.schemas.admin import BackupRequest, RelocateRequest, RelocationOut, RestoreOut, RetentionOut
from chitchat.services import attachments, backup, retention
from chitchat.services.maintenance import maintenance_window

logger = logging.getLogger(__name__)


def require_admin_token(x_admin_token: str | None = Header(default=None)) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin API is disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


@contextmanager
def _admin_operation(action: str):
    try:
        with maintenance_window():
            yield
    except (MaintenanceBusyError, StoreBusyError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except (ValidationError, AuthenticationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except FormatError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except FilesystemError as exc:
        logger.warning("Admin %s failed: %s", action, exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.post("/backup")
def create_backup(payload: BackupRequest):
    with _admin_operation("backup"):
        result = backup.snapshot(payload.passphrase)
    return Response(
        content=result.payload,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{result.suggested_file_name}"'},
    )


@router.post("/restore", response_model=RestoreOut)
def restore_backup(file: UploadFile = File(...), passphrase: str = Form(...)):
    data = file.file.read()
    with _admin_operation("restore"):
        result = backup.restore(data, passphrase)
    return result


@router.post("/attachments/relocate", response_model=RelocationOut)
def relocate_attachments(payload: RelocateRequest):
    old_root = payload.old_root.strip()
    new_root = payload.new_root.strip()
    if not old_root or not new_root:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="old_root and new_root are required")
    with _admin_operation("relocation"):
        result = attachments.relocate(old_root, new_root)
    return result


@router.post("/retention/run", response_model=RetentionOut)
def run_retention():
    with _admin_operation("retention"):
        result = retention.run(settings)
    return result
