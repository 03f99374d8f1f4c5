from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict

from game_rewards.logging_config import get_logger


logger = get_logger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_url: str = "sqlite:///./game_rewards.db"
    bearer_token: Optional[str] = None
    game_session_expiry_seconds: int = 1800
    fraud_reject_threshold: int = 50
    fraud_max_credits_per_minute: int = 5
    fraud_max_credits_per_hour: int = 50
    fraud_max_credits_per_day: int = 200
    fraud_flag_threshold: int = 100
    metrics_flush_threshold: int = 100
    metrics_flush_interval_seconds: float = 5.0
    metrics_max_buffer: int = 10000


class GameProvider(str, Enum):
    GAMEZOP = "gamezop"
    ADJOE = "adjoe"
    QUREKA = "qureka"


class ValueType(str, Enum):
    CURRENCY_UNITS = "currency_units"
    TIME_SECONDS = "time_seconds"
    OPAQUE_POINTS = "opaque_points"


class ConversionRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    multiplier: float
    minimum_value: float
    maximum_credit: int
    # raw units per conversion step, e.g. 60 seconds of playtime
    step: float = 1
    description: str = ""


DEFAULT_CONVERSION_RULES = {
    GameProvider.GAMEZOP: ConversionRules(
        multiplier=1,
        minimum_value=1,
        maximum_credit=1000,
        description="Direct reward - 1 point per reward unit",
    ),
    GameProvider.ADJOE: ConversionRules(
        multiplier=1,
        minimum_value=60,
        maximum_credit=500,
        step=60,
        description="1 point per minute of playtime",
    ),
    GameProvider.QUREKA: ConversionRules(
        multiplier=0.1,
        minimum_value=10,
        maximum_credit=500,
        description="1 point per 10 coins",
    ),
}


class ProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: GameProvider
    api_key: str
    webhook_secret: str
    app_id: Optional[str] = None
    enabled: bool = True
    conversion_rules: ConversionRules
    launch_url_template: Optional[str] = None


class ProviderSettings(BaseSettings):
    """
    Per-provider environment block, read with a ``<PROVIDER>_`` prefix.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    api_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    app_id: Optional[str] = None
    enabled: bool = True
    launch_url: Optional[str] = None
    multiplier: Optional[float] = None
    minimum_value: Optional[float] = None
    maximum_credit: Optional[int] = None
    step: Optional[float] = None

    def to_provider_config(self, provider: GameProvider) -> Optional[ProviderConfig]:
        if not self.api_key or not self.webhook_secret:
            return None
        overrides = {
            field: value
            for field, value in {
                "multiplier": self.multiplier,
                "minimum_value": self.minimum_value,
                "maximum_credit": self.maximum_credit,
                "step": self.step,
            }.items()
            if value is not None
        }
        rules = DEFAULT_CONVERSION_RULES[provider].model_copy(update=overrides)
        return ProviderConfig(
            provider=provider,
            api_key=self.api_key,
            webhook_secret=self.webhook_secret,
            app_id=self.app_id,
            enabled=self.enabled,
            conversion_rules=rules,
            launch_url_template=self.launch_url,
        )


class ProviderRegistry:
    """
    Immutable set of provider configurations, built once at process start
    and handed to the pipeline.
    """

    def __init__(self, configs: list[ProviderConfig]):
        self._configs = {config.provider: config for config in configs}

    @classmethod
    def from_env(cls, env_file: Optional[str] = ".env") -> "ProviderRegistry":
        configs = []
        for provider in GameProvider:
            provider_settings = ProviderSettings(
                _env_prefix=f"{provider.value.upper()}_",
                _env_file=env_file,
            )
            config = provider_settings.to_provider_config(provider)
            if config is None:
                logger.warning("Provider %s not fully configured, skipping", provider.value)
                continue
            configs.append(config)
        return cls(configs)

    def get(self, provider: GameProvider) -> Optional[ProviderConfig]:
        return self._configs.get(provider)

    def is_enabled(self, provider: GameProvider) -> bool:
        config = self.get(provider)
        return config is not None and config.enabled

    def all(self) -> list[ProviderConfig]:
        return [self._configs[p] for p in GameProvider if p in self._configs]


def parse_provider(value: str) -> Optional[GameProvider]:
    try:
        return GameProvider(value.lower())
    except ValueError:
        return None
