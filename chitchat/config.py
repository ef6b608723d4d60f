from pathlib import Path

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class DefaultRoom(BaseModel):
    id: str
    name: str
    type: str = "text"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=str(_PROJECT_ROOT / ".env"), env_prefix="CHITCHAT_")

    app_name: str = "ChitChat"
    environment: str = "dev"

    # Relative paths are resolved against the project root.
    database_path: str = "./data/chitchat.db"
    attachment_storage_path: str = "./data/uploads"

    # Server-wide default for rooms in "inherit" mode. 0 disables pruning.
    message_retention_days: int = 0
    retention_scheduler_enabled: bool = True
    retention_interval_minutes: int = 60

    # Pre-shared token for the /admin endpoints. Empty disables them.
    admin_token: str = ""

    default_rooms: list[DefaultRoom] = [
        DefaultRoom(id="general", name="general", type="text"),
        DefaultRoom(id="random", name="random", type="text"),
        DefaultRoom(id="voice-lobby", name="Lobby", type="voice"),
    ]

    def resolve_path(self, value: str) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = _PROJECT_ROOT / path
        return path.resolve()

    @property
    def database_file(self) -> Path:
        return self.resolve_path(self.database_path)

    @property
    def attachment_root(self) -> Path:
        return self.resolve_path(self.attachment_storage_path)


settings = Settings()
