"""Tests for participant identity mapping"""

import re
import threading

import pytest

from rwe_governance.exceptions import ValidationError
from rwe_governance.governance.identity import ParticipantIdentityMapper, generate_participant_id

PARTICIPANT_ID_PATTERN = re.compile(r"^P-[A-HJ-NP-Z2-9]{4}-[A-HJ-NP-Z2-9]{4}-[A-HJ-NP-Z2-9]{4}-[A-HJ-NP-Z2-9]{4}$")


class TestParticipantIdentityMapper:
    """Test ParticipantIdentityMapper class"""

    def test_participant_id_format(self):
        """Test generated IDs use the unambiguous alphabet"""
        for _ in range(50):
            assert PARTICIPANT_ID_PATTERN.match(generate_participant_id())

    def test_get_or_create_is_stable(self, clock):
        """Test the same user always maps to the same participant"""
        mapper = ParticipantIdentityMapper(clock=clock)

        first = mapper.get_or_create("user-1")

        assert mapper.get_or_create("user-1") == first
        assert mapper.lookup("user-1") == first

    def test_distinct_users_get_distinct_ids(self, clock):
        """Test different users map to different participants"""
        mapper = ParticipantIdentityMapper(clock=clock)

        ids = {mapper.get_or_create(f"user-{i}") for i in range(100)}

        assert len(ids) == 100

    def test_id_does_not_contain_user_id(self, clock):
        """Test the participant ID carries nothing of the user ID"""
        mapper = ParticipantIdentityMapper(clock=clock)

        participant_id = mapper.get_or_create("ALICE")

        assert "ALICE" not in participant_id

    def test_lookup_does_not_create(self, clock):
        """Test lookup of an unmapped user returns None"""
        mapper = ParticipantIdentityMapper(clock=clock)

        assert mapper.lookup("user-1") is None
        assert mapper.lookup("user-1") is None

    def test_empty_user_rejected(self, clock):
        """Test an empty user ID raises ValidationError"""
        mapper = ParticipantIdentityMapper(clock=clock)

        with pytest.raises(ValidationError):
            mapper.get_or_create("")

    def test_no_reverse_lookup(self, clock):
        """Test the mapper offers no participant-to-user resolution"""
        mapper = ParticipantIdentityMapper(clock=clock)
        participant_id = mapper.get_or_create("user-1")

        public = [name for name in dir(mapper) if not name.startswith("_")]

        assert sorted(public) == ["get_or_create", "lookup"]
        assert "user-1" not in repr(mapper)
        assert mapper.lookup(participant_id) is None

    def test_concurrent_first_use_creates_one_mapping(self, clock):
        """Test racing first calls agree on one participant ID"""
        mapper = ParticipantIdentityMapper(clock=clock)
        results = []

        def resolve():
            results.append(mapper.get_or_create("user-1"))

        threads = [threading.Thread(target=resolve) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(set(results)) == 1
