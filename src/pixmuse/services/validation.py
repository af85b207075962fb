"""Input validation for job requests.

Runs before any Ledger interaction so malformed requests never touch the balance.
"""

from urllib.parse import urlparse

from pixmuse.services.exceptions import JobValidationError


def validate_prompt(prompt: str | None, max_length: int = 1000) -> str:
    """Validate prompt text for image generation.

    Args:
        prompt: Text prompt from the user
        max_length: Maximum accepted length

    Returns:
        Prompt stripped of surrounding whitespace

    Raises:
        JobValidationError: If prompt is empty, None, or too long
    """
    if not isinstance(prompt, str):
        raise JobValidationError(f"Prompt must be a string, got {type(prompt).__name__}")

    prompt = prompt.strip()
    if not prompt:
        raise JobValidationError("Prompt cannot be empty")

    if len(prompt) > max_length:
        raise JobValidationError(
            f"Prompt exceeds maximum length of {max_length} characters (got {len(prompt)})"
        )

    return prompt


def validate_image_count(image_count: int, max_images: int) -> int:
    if isinstance(image_count, bool) or not isinstance(image_count, int):
        raise JobValidationError("Image count must be an integer")
    if not 1 <= image_count <= max_images:
        raise JobValidationError(f"Image count must be between 1 and {max_images}")
    return image_count


def validate_archive_url(archive_url: str | None) -> str:
    """Validate the uploaded-archive reference used as training input."""
    if not archive_url or not isinstance(archive_url, str):
        raise JobValidationError("Archive URL is required")
    archive_url = archive_url.strip()
    parsed = urlparse(archive_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise JobValidationError(f"Archive URL must be an http(s) URL, got {archive_url!r}")
    return archive_url
