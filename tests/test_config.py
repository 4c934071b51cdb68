"""Tests for configuration management"""

import pytest
from rwe_governance.config import (
    Settings,
    StorageConfig,
    AuditConfig,
    ConsentConfig,
    QualityConfig,
    ExportConfig,
    SensorConfig,
)


def test_settings_default_values():
    """Test that settings load with default values"""
    settings = Settings()

    assert settings.environment == "development"
    assert settings.debug is False
    assert settings.storage.backend == "memory"
    assert settings.consent.consent_version == "1.0.0"


def test_storage_config():
    """Test storage configuration"""
    storage = StorageConfig()

    assert storage.backend == "memory"
    assert storage.data_dir == "data/governance"


def test_audit_config():
    """Test audit configuration"""
    audit = AuditConfig()

    assert audit.audit_log_path is None
    assert audit.retention_days == 2555


def test_consent_config():
    """Test consent configuration"""
    consent = ConsentConfig()

    assert consent.default_expiry_days is None


def test_quality_config():
    """Test quality scoring configuration"""
    quality = QualityConfig()

    assert quality.expected_daily_signals == 2.0
    assert quality.duplicate_window_seconds == 60
    assert quality.outlier_sigma == 3.0


def test_export_config():
    """Test export configuration"""
    export = ExportConfig()

    assert export.study_label == "RWE"
    assert export.deidentification_method == "k-anonymity with bucketed demographics"
    assert export.native_schema_version == "1.0.0"


def test_sensor_config():
    """Test sensor configuration"""
    assert SensorConfig().default_retention_days == 90


def test_env_override(monkeypatch):
    """Test environment variables override defaults"""
    monkeypatch.setenv("STORAGE_BACKEND", "json")
    monkeypatch.setenv("QUALITY_OUTLIER_SIGMA", "2.5")

    assert StorageConfig().backend == "json"
    assert QualityConfig().outlier_sigma == 2.5
