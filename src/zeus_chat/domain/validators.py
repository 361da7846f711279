"""Input checks run before anything is written."""

from typing import Optional

from .errors import ValidationError

MIN_TITLE_LENGTH = 3
MAX_TITLE_LENGTH = 100
MAX_TEMPERATURE = 2.0


def validate_title(title: str) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required", details={"field": "title"})
    if len(title) < MIN_TITLE_LENGTH:
        raise ValidationError(
            f"Title must be at least {MIN_TITLE_LENGTH} characters", details={"field": "title"}
        )
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(
            f"Title must be less than {MAX_TITLE_LENGTH} characters", details={"field": "title"}
        )
    return title


def validate_message_content(content: str, max_length: int) -> str:
    if not content or not content.strip():
        raise ValidationError("Message cannot be empty", details={"field": "content"})
    if len(content) > max_length:
        raise ValidationError(
            f"Message is too long (max {max_length:,} characters)",
            details={"field": "content", "max_length": max_length},
        )
    return content


def validate_sampling(temperature: Optional[float], max_tokens: Optional[int]) -> None:
    if temperature is not None and not 0.0 <= temperature <= MAX_TEMPERATURE:
        raise ValidationError(
            f"Temperature must be between 0 and {MAX_TEMPERATURE}", details={"field": "temperature"}
        )
    if max_tokens is not None and max_tokens <= 0:
        raise ValidationError("Max tokens must be positive", details={"field": "max_tokens"})
