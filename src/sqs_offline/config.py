import logging
import os
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Any, Mapping

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

PLUGIN_CONFIG_KEY = "serverless-offline-sqs-local"
OFFLINE_CONFIG_KEY = "serverless-offline"

# Manifest `custom` keys -> AppConfig field names.
_CUSTOM_KEY_MAP = {
    "region": "region",
    "endpoint": "endpoint_url",
    "accessKeyId": "access_key_id",
    "secretAccessKey": "secret_access_key",
    "accountId": "account_id",
    "waitTimeSeconds": "wait_time_seconds",
    "idleDelaySeconds": "idle_delay_seconds",
}

_ALLOWED_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Runtime configuration for the offline SQS event source."""

    # --- Backend connection ---
    service_name: str
    region: str
    endpoint_url: str | None
    access_key_id: str
    secret_access_key: str
    account_id: str

    # --- Polling behaviour ---
    wait_time_seconds: int
    idle_delay_seconds: float
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float
    delete_max_attempts: int

    # --- Handler discovery & logging ---
    location: str
    log_level: str

    # --- Derived Properties ---
    @property
    def read_timeout_seconds(self) -> int:
        # Must outlive the long poll, otherwise botocore aborts the receive.
        return self.wait_time_seconds + 10

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "AppConfig":
        """
        Builds a validated config from loosely typed values (strings from the
        environment, JSON scalars from the manifest). Raises ConfigurationError.
        """
        try:
            endpoint_url = raw.get("endpoint_url") or None

            wait_time_seconds = int(raw["wait_time_seconds"])
            if not 0 <= wait_time_seconds <= 20:
                raise ValueError("wait_time_seconds must be between 0 and 20.")

            idle_delay_seconds = float(raw["idle_delay_seconds"])
            if idle_delay_seconds < 0:
                raise ValueError("idle_delay_seconds must not be negative.")

            retry_base_delay_seconds = float(raw["retry_base_delay_seconds"])
            if retry_base_delay_seconds <= 0:
                raise ValueError("retry_base_delay_seconds must be positive.")

            retry_max_delay_seconds = float(raw["retry_max_delay_seconds"])
            if retry_max_delay_seconds < retry_base_delay_seconds:
                raise ValueError(
                    "retry_max_delay_seconds must be >= retry_base_delay_seconds."
                )

            delete_max_attempts = int(raw["delete_max_attempts"])
            if delete_max_attempts < 1:
                raise ValueError("delete_max_attempts must be a positive integer.")

            log_level = str(raw["log_level"]).upper()
            if log_level not in _ALLOWED_LOG_LEVELS:
                raise ValueError(
                    f"LOG_LEVEL must be one of {_ALLOWED_LOG_LEVELS}, not '{log_level}'"
                )

            region = str(raw["region"])
            if not region:
                raise ValueError("region must not be empty.")

        except KeyError as e:
            raise ConfigurationError(
                f"Missing configuration value: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e

        return cls(
            service_name=str(raw["service_name"]),
            region=region,
            endpoint_url=endpoint_url,
            access_key_id=str(raw["access_key_id"]),
            secret_access_key=str(raw["secret_access_key"]),
            account_id=str(raw["account_id"]),
            wait_time_seconds=wait_time_seconds,
            idle_delay_seconds=idle_delay_seconds,
            retry_base_delay_seconds=retry_base_delay_seconds,
            retry_max_delay_seconds=retry_max_delay_seconds,
            delete_max_attempts=delete_max_attempts,
            location=str(raw["location"]),
            log_level=log_level,
        )

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        return cls.from_mapping(
            {
                "service_name": os.getenv("SQS_OFFLINE_SERVICE_NAME", "sqs-offline"),
                "region": os.getenv("SQS_OFFLINE_REGION", "us-west-2"),
                "endpoint_url": os.getenv(
                    "SQS_OFFLINE_ENDPOINT", "http://localhost:9324"
                ),
                "access_key_id": os.getenv("SQS_OFFLINE_ACCESS_KEY_ID", "local"),
                "secret_access_key": os.getenv(
                    "SQS_OFFLINE_SECRET_ACCESS_KEY", "local"
                ),
                "account_id": os.getenv("SQS_OFFLINE_ACCOUNT_ID", "000000000000"),
                "wait_time_seconds": os.getenv("SQS_OFFLINE_WAIT_TIME_SECONDS", "5"),
                "idle_delay_seconds": os.getenv(
                    "SQS_OFFLINE_IDLE_DELAY_SECONDS", "0.1"
                ),
                "retry_base_delay_seconds": os.getenv(
                    "SQS_OFFLINE_RETRY_BASE_DELAY_SECONDS", "0.5"
                ),
                "retry_max_delay_seconds": os.getenv(
                    "SQS_OFFLINE_RETRY_MAX_DELAY_SECONDS", "30"
                ),
                "delete_max_attempts": os.getenv(
                    "SQS_OFFLINE_DELETE_MAX_ATTEMPTS", "3"
                ),
                "location": os.getenv("SQS_OFFLINE_LOCATION", "."),
                "log_level": os.getenv("LOG_LEVEL", "INFO"),
            }
        )

    def with_overrides(self, **changes: Any) -> "AppConfig":
        """Returns a re-validated copy; `None` values leave a field untouched."""
        unknown = set(changes) - set(self.__dataclass_fields__)
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration field(s): {sorted(unknown)}"
            )
        merged = asdict(self)
        merged.update({k: v for k, v in changes.items() if v is not None})
        return type(self).from_mapping(merged)


def config_overrides_from_manifest(manifest: Mapping[str, Any]) -> dict[str, Any]:
    """
    Extracts config overrides from a manifest: `provider.region` first, then the
    plugin's `custom` section, then the `serverless-offline` handler location.
    """
    overrides: dict[str, Any] = {}

    provider = manifest.get("provider") or {}
    if provider.get("region"):
        overrides["region"] = provider["region"]

    custom = manifest.get("custom") or {}
    plugin_config = custom.get(PLUGIN_CONFIG_KEY) or {}
    for key, field_name in _CUSTOM_KEY_MAP.items():
        if plugin_config.get(key) is not None:
            overrides[field_name] = plugin_config[key]

    offline_config = custom.get(OFFLINE_CONFIG_KEY) or {}
    if offline_config.get("location"):
        overrides["location"] = offline_config["location"]

    return overrides


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached using lru_cache, so the environment is only read once
    on the first call. This avoids import-time side effects.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
