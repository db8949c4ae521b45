from pydantic_settings import BaseSettings
from pydantic import AliasChoices, Field, field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # JWT Settings
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Bearer secret used by the external scheduler (cron) to trigger retry sweeps
    CRON_SECRET: str = ""

    # App Settings
    APP_NAME: str = "Fiscal Billing Backend"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Supabase Storage Settings
    SUPABASE_URL: str = ""  # e.g., "https://xxxx.supabase.co"
    SUPABASE_SERVICE_KEY: str = ""  # Service role key (NOT anon key)
    SUPABASE_STORAGE_BUCKET_INVOICES: str = "facturas"

    # Fiscal authority (ARCA/AFIP WSFE). Every AFIP_* name also accepts ARCA_*.
    AFIP_FACTURACION_ACTIVA: bool = Field(
        default=True,
        validation_alias=AliasChoices("AFIP_FACTURACION_ACTIVA", "ARCA_FACTURACION_ACTIVA"),
    )
    AFIP_CUIT: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AFIP_CUIT", "ARCA_CUIT"),
    )
    AFIP_PUNTO_VENTA: int = Field(
        default=1,
        validation_alias=AliasChoices("AFIP_PUNTO_VENTA", "ARCA_PUNTO_VENTA"),
    )
    AFIP_CBTE_TIPO: int = Field(
        default=11,
        validation_alias=AliasChoices("AFIP_CBTE_TIPO", "ARCA_CBTE_TIPO"),
    )
    AFIP_PRODUCCION: bool = Field(
        default=False,
        validation_alias=AliasChoices("AFIP_PRODUCCION", "ARCA_PRODUCCION"),
    )
    AFIP_ACCESS_TOKEN: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AFIP_ACCESS_TOKEN", "ARCA_ACCESS_TOKEN", "AFIPSDK_ACCESS_TOKEN"),
    )
    AFIP_CERT: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AFIP_CERT", "ARCA_CERT"),
    )
    AFIP_KEY: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AFIP_KEY", "ARCA_KEY"),
    )
    AFIP_CERT_BASE64: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AFIP_CERT_BASE64", "AFIP_CERT_B64", "ARCA_CERT_BASE64", "ARCA_CERT_B64"),
    )
    AFIP_KEY_BASE64: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AFIP_KEY_BASE64", "AFIP_KEY_B64", "ARCA_KEY_BASE64", "ARCA_KEY_B64"),
    )
    AFIP_CERT_PATH: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AFIP_CERT_PATH", "ARCA_CERT_PATH"),
    )
    AFIP_KEY_PATH: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AFIP_KEY_PATH", "ARCA_KEY_PATH"),
    )
    AFIP_IVA_ID: int = Field(
        default=5,
        validation_alias=AliasChoices("AFIP_IVA_ID", "ARCA_IVA_ID"),
    )
    AFIP_IVA_PORCENTAJE: float = Field(
        default=21,
        validation_alias=AliasChoices("AFIP_IVA_PORCENTAJE", "ARCA_IVA_PORCENTAJE"),
    )
    AFIP_SDK_URL: str = "https://app.afipsdk.com/api/"

    # Printed document branding
    FACTURA_LOGO_URL: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("FACTURA_LOGO_URL", "FACTURA_LOGO_DATA", "FACTURA_LOGO_PATH"),
    )
    FACTURA_LEYENDA: Optional[str] = None
    FACTURA_LEYENDA_FOOTER: Optional[str] = None
    FACTURA_EMISOR_NOMBRE: Optional[str] = None
    FACTURA_EMISOR_DOMICILIO: Optional[str] = None
    FACTURA_EMISOR_TELEFONO: Optional[str] = None
    FACTURA_EMISOR_EMAIL: Optional[str] = None

    # Emission engine
    FISCAL_TIMEZONE: str = "America/Argentina/Buenos_Aires"
    FISCAL_HTTP_TIMEOUT_SECONDS: float = 30.0
    FISCAL_RETRY_INTERVAL_MINUTES: int = 5  # Delay before a failed pending invoice is due again
    FISCAL_RETRY_BATCH_SIZE: int = 30  # Default rows per sweep
    FISCAL_RETRY_MAX_BATCH_SIZE: int = 100  # Hard cap on rows per sweep
    FISCAL_CLAIM_LEASE_SECONDS: int = 300  # How long a row claim blocks other callers
    FISCAL_PROBE_MAX_ATTEMPTS: int = 20  # Sequential numbers tried after a desynchronization
    FISCAL_RETRY_SCHEDULER_ENABLED: bool = False  # Run the sweep in-process with APScheduler

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @field_validator(
        'AFIP_CUIT', 'AFIP_ACCESS_TOKEN', 'AFIP_CERT', 'AFIP_KEY',
        'AFIP_CERT_BASE64', 'AFIP_KEY_BASE64', 'AFIP_CERT_PATH', 'AFIP_KEY_PATH',
        'FACTURA_LOGO_URL', 'FACTURA_LEYENDA', 'FACTURA_LEYENDA_FOOTER',
        'FACTURA_EMISOR_NOMBRE', 'FACTURA_EMISOR_DOMICILIO',
        'FACTURA_EMISOR_TELEFONO', 'FACTURA_EMISOR_EMAIL',
        mode='before',
    )
    @classmethod
    def strip_optional_text(cls, v):
        """Blank values count as unset; surrounding quotes are removed."""
        if not isinstance(v, str):
            return v
        v = v.strip()
        if len(v) >= 2 and v[0] == v[-1] and v[0] in ("'", '"'):
            v = v[1:-1].strip()
        return v or None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        populate_by_name = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
