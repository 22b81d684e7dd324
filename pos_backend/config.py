import logging
from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite:///./pos.db"
    env: str = "local"
    log_level: str = "INFO"

    # Fallbacks used when the matching system_setting row is missing.
    company_name: str = "POS Management"
    default_tax_rate: Decimal = Decimal("12")
    loyalty_points_enabled: bool = True
    loyalty_point_rate: Decimal = Decimal("50")
    lifetime_point_rate: Decimal = Decimal("50")
    auto_reorder_enabled: bool = True
    large_sale_threshold: Decimal = Decimal("10000")
    bulk_refund_item_count: int = 2
    audit_log_enabled: bool = True
    audit_log_retention_days: int = 365

    model_config = SettingsConfigDict(env_file=".env", env_prefix="POS_", case_sensitive=False)


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
