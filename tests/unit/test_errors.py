"""Error taxonomy tests."""

from cookcam.errors import (
    ConflictError,
    DuplicateRequest,
    PersistenceError,
    ProgressionError,
    RetryableError,
    ValidationError,
)


class TestErrors:

    def test_hierarchy(self):
        for cls in (ValidationError, ConflictError, RetryableError, PersistenceError, DuplicateRequest):
            assert issubclass(cls, ProgressionError)

    def test_to_dict(self):
        err = ValidationError("Unknown action type", user_id="u1", operation="award_xp", context={"action_type": "x"})
        assert err.to_dict() == {
            "error": "ValidationError",
            "message": "Unknown action type",
            "user_id": "u1",
            "operation": "award_xp",
            "context": {"action_type": "x"},
        }

    def test_persistence_error_transient_flag(self):
        assert PersistenceError("down", transient=True).to_dict()["transient"] is True

    def test_duplicate_carries_stored_result(self):
        dup = DuplicateRequest("key-1", stored_result={"xp_gained": 5}, followup_status="done")
        assert dup.idempotency_key == "key-1"
        assert dup.stored_result == {"xp_gained": 5}
        assert "key-1" in str(dup)
