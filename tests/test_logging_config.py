"""Tests for logging configuration"""

import structlog

from rwe_governance.logging_config import add_app_context, drop_identifying_keys, setup_logging


class TestProcessors:
    """Test the custom structlog processors"""

    def test_identifying_keys_dropped(self):
        """Test user IDs and contact emails never reach the renderer"""
        event = {
            "event": "participant_mapping_created",
            "user_id": "user-1",
            "contact_email": "bd@beta.example",
            "participant_id": "P-ABCD",
        }

        processed = drop_identifying_keys(None, "info", event)

        assert processed == {"event": "participant_mapping_created", "participant_id": "P-ABCD"}

    def test_events_without_identifiers_untouched(self):
        """Test other keys pass through"""
        event = {"event": "cohort_locked", "cohort_id": "c-1"}

        assert drop_identifying_keys(None, "info", dict(event)) == event

    def test_app_context(self):
        """Test environment and service are added"""
        processed = add_app_context(None, "info", {"event": "x"})

        assert processed["service"] == "rwe-governance"
        assert "environment" in processed

    def test_setup_installs_processors(self):
        """Test configured loggers run the identifier filter after the app context"""
        setup_logging()

        processors = structlog.get_config()["processors"]
        assert processors.index(add_app_context) < processors.index(drop_identifying_keys)
