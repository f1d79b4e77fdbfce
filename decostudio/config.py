from __future__ import annotations

from functools import lru_cache
from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # Database
    database_url: str = Field('sqlite+aiosqlite:///./decostudio.db', alias='DATABASE_URL')

    # Kie.ai
    kie_api_key: str = Field('', alias='KIE_API_KEY')
    kie_base_url: str = Field('https://api.kie.ai/api/v1', alias='KIE_BASE_URL')
    kie_model_id: str = Field('google/nano-banana-edit', alias='KIE_MODEL_ID')
    kie_callback_url: str = Field('', alias='KIE_CALLBACK_URL')
    kie_webhook_hmac_key: str = Field('', alias='KIE_WEBHOOK_HMAC_KEY')
    kie_webhook_require_signature: bool = Field(False, alias='KIE_WEBHOOK_REQUIRE_SIGNATURE')
    kie_webhook_max_skew_seconds: int = Field(300, alias='KIE_WEBHOOK_MAX_SKEW_SECONDS')
    kie_timeout_seconds: float = Field(60.0, alias='KIE_TIMEOUT_SECONDS')

    # Stripe
    stripe_secret_key: str = Field('', alias='STRIPE_SECRET_KEY')
    stripe_webhook_secret: str = Field('', alias='STRIPE_WEBHOOK_SECRET')
    stripe_price_hd_unlock: str = Field('', alias='STRIPE_PRICE_HD_UNLOCK')
    stripe_price_pack_10: str = Field('', alias='STRIPE_PRICE_10_CREDITS')
    stripe_price_pack_25: str = Field('', alias='STRIPE_PRICE_25_CREDITS')
    stripe_price_pack_50: str = Field('', alias='STRIPE_PRICE_50_CREDITS')
    stripe_price_pack_100: str = Field('', alias='STRIPE_PRICE_100_CREDITS')

    # Blob storage
    blob_storage_path: str = Field('./var/blobs', alias='BLOB_STORAGE_PATH')
    public_blob_base_url: str = Field('http://127.0.0.1:9010/blobs', alias='PUBLIC_BLOB_BASE_URL')
    max_upload_bytes: int = Field(10 * 1024 * 1024, alias='MAX_UPLOAD_BYTES')

    # Credits
    generation_cost_credits: int = Field(1, alias='GENERATION_COST_CREDITS')
    hd_unlock_cost_credits: int = Field(1, alias='HD_UNLOCK_COST_CREDITS')
    signup_bonus_credits: int = Field(3, alias='SIGNUP_BONUS_CREDITS')
    credit_history_default_limit: int = Field(50, alias='CREDIT_HISTORY_DEFAULT_LIMIT')
    credit_history_max_limit: int = Field(200, alias='CREDIT_HISTORY_MAX_LIMIT')
    generation_list_max_limit: int = Field(100, alias='GENERATION_LIST_MAX_LIMIT')

    # Polling
    poll_max_attempts: int = Field(40, alias='POLL_MAX_ATTEMPTS')
    poll_interval_seconds: float = Field(3.0, alias='POLL_INTERVAL_SECONDS')
    pending_stale_seconds: int = Field(600, alias='PENDING_STALE_SECONDS')
    pending_sweep_interval_seconds: int = Field(60, alias='PENDING_SWEEP_INTERVAL_SECONDS')

    # Web
    web_host: str = Field('127.0.0.1', alias='WEB_HOST')
    web_port: int = Field(9010, alias='WEB_PORT')
    public_site_url: str = Field('http://127.0.0.1:9010', alias='PUBLIC_SITE_URL')

    # Logging
    log_level: str = Field('INFO', alias='LOG_LEVEL')

    def credit_pack_prices(self) -> Dict[str, str]:
        return {
            'pack_10': self.stripe_price_pack_10,
            'pack_25': self.stripe_price_pack_25,
            'pack_50': self.stripe_price_pack_50,
            'pack_100': self.stripe_price_pack_100,
        }


@lru_cache

def get_settings() -> Settings:
    return Settings()
