import re
import uuid

from .errors import ValidationError

DEVICE_ID_PATTERN = re.compile(r'^[a-f0-9]{32}$')


def validate_device_id(device_id) -> str:
    """Return the device id unchanged or raise ValidationError."""
    if not isinstance(device_id, str) or not device_id:
        raise ValidationError("device id must be a non-empty string", code="INVALID_DEVICE_ID")
    if not DEVICE_ID_PATTERN.fullmatch(device_id):
        raise ValidationError("device id must be 32 lowercase hex characters", code="INVALID_DEVICE_ID")
    return device_id


def validate_score(score, max_score: int = 999999) -> int:
    # bool is an int subclass; True is not a score
    if isinstance(score, bool) or not isinstance(score, int):
        raise ValidationError("score must be an integer", code="INVALID_SCORE")
    if score < 0 or score > max_score:
        raise ValidationError(f"score must be between 0 and {max_score}", code="INVALID_SCORE")
    return score


def new_device_id() -> str:
    """Random device token in the canonical format (tooling and tests)."""
    return uuid.uuid4().hex
