from datetime import UTC, datetime

from app.core.config import Settings
from app.schemas.health import HealthResponse


class HealthService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_status(self) -> HealthResponse:
        return HealthResponse(
            service=self.settings.app_name,
            environment=self.settings.app_env,
            store=self.settings.meetings_store,
            timestamp=datetime.now(UTC),
        )
