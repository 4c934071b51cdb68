"""Configuration management using Pydantic settings"""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingConfig(BaseSettings):
    """Logging configuration"""

    level: str = Field(default="INFO", description="Logging level")
    format: str = Field(default="json", description="Log format (json or text)")
    output: str = Field(default="stdout", description="Log output (stdout or file path)")

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class StorageConfig(BaseSettings):
    """Keyed store configuration"""

    backend: str = Field(default="memory", description="Store backend (memory or json)")
    data_dir: str = Field(default="data/governance", description="Directory for JSON snapshot stores")

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class AuditConfig(BaseSettings):
    """Audit trail configuration"""

    audit_log_path: Optional[str] = Field(default=None, description="JSON Lines mirror of every audit entry")
    retention_days: int = Field(default=2555, description="Audit log retention in days (7 years)")

    model_config = SettingsConfigDict(
        env_prefix="AUDIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class ConsentConfig(BaseSettings):
    """Research consent configuration"""

    consent_version: str = Field(default="1.0.0", description="Version of the consent language")
    default_expiry_days: Optional[int] = Field(default=None, description="Expiry applied when a grant gives none")

    model_config = SettingsConfigDict(
        env_prefix="CONSENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class QualityConfig(BaseSettings):
    """Data quality scoring configuration"""

    expected_daily_signals: float = Field(default=2.0, description="Expected signals per day")
    duplicate_window_seconds: int = Field(default=60, description="Consecutive points closer than this are duplicates")
    outlier_sigma: float = Field(default=3.0, description="Standard deviations beyond which a value is an outlier")

    model_config = SettingsConfigDict(
        env_prefix="QUALITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class ExportConfig(BaseSettings):
    """RWE export configuration"""

    study_label: str = Field(default="RWE", description="STUDYID used in SDTM domains")
    deidentification_method: str = Field(
        default="k-anonymity with bucketed demographics",
        description="De-identification method recorded on every export"
    )
    native_schema_version: str = Field(default="1.0.0", description="Native export schema version")

    model_config = SettingsConfigDict(
        env_prefix="EXPORT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class SensorConfig(BaseSettings):
    """Sensor proxy configuration"""

    default_retention_days: int = Field(default=90, description="Raw sensor event retention in days")

    model_config = SettingsConfigDict(
        env_prefix="SENSOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings"""

    environment: str = Field(default="development", description="Environment (development, staging, production)")
    debug: bool = Field(default=False, description="Debug mode")

    # Sub-configurations
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    consent: ConsentConfig = Field(default_factory=ConsentConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    sensor: SensorConfig = Field(default_factory=SensorConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


# Global settings instance
settings = Settings()
