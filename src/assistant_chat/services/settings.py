"""Per-user completion settings (model, temperature, max tokens)."""

from uuid import UUID

import structlog
from pydantic import ValidationError

from ..config import Settings
from ..domain.errors import InvalidInput
from ..domain.models import ApiSettings
from ..repositories.base import Repository

logger = structlog.get_logger()


class SettingsService:
    def __init__(self, repository: Repository, config: Settings) -> None:
        self.repository = repository
        self.config = config

    def defaults(self, user_id: UUID) -> ApiSettings:
        return ApiSettings(
            user_id=user_id,
            model=self.config.default_model,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )

    async def get(self, user_id: UUID) -> ApiSettings:
        """Stored settings for the user, or the configured defaults."""
        stored = await self.repository.get_api_settings(user_id)
        return stored if stored is not None else self.defaults(user_id)

    async def save(
        self, user_id: UUID, model: str, temperature: float, max_tokens: int
    ) -> ApiSettings:
        try:
            settings = ApiSettings(
                user_id=user_id,
                model=model.strip(),
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except ValidationError as e:
            raise InvalidInput(f"Invalid settings: {e.errors()[0]['msg']}") from e
        saved = await self.repository.save_api_settings(settings)
        logger.info("api_settings_saved", user_id=str(user_id), model=saved.model)
        return saved
