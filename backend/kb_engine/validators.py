"""Upload validation utilities."""
from kb_engine.exceptions import EmptyFileError, FileSizeExceededError, UnsupportedFileTypeError
from kb_engine.services.text_extractor import SUPPORTED_EXTENSIONS, get_file_extension


def validate_file_type(filename: str) -> str:
    """Validate file type and return the lowercase extension without the dot."""
    if not filename:
        raise UnsupportedFileTypeError("File name is required.")

    file_extension = get_file_extension(filename)
    if file_extension not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFileTypeError(
            f"Unsupported file type. Supported formats: "
            f"{', '.join('.' + e for e in sorted(SUPPORTED_EXTENSIONS))}"
        )
    return file_extension


def validate_file_size(file_size_bytes: int, max_size_mb: float) -> None:
    """Validate file size."""
    if file_size_bytes == 0:
        raise EmptyFileError("Uploaded file is empty.")

    file_size_mb = file_size_bytes / (1024 * 1024)
    if file_size_mb > max_size_mb:
        raise FileSizeExceededError(
            f"File size ({file_size_mb:.2f} MB) exceeds maximum allowed size ({max_size_mb} MB)."
        )


def validate_upload(content: bytes, filename: str, max_size_mb: float) -> str:
    """
    Validate an upload before any record is created.

    Args:
        content: Raw file bytes
        filename: Original filename
        max_size_mb: Maximum allowed size in MB

    Returns:
        File extension

    Raises:
        UnsupportedFileTypeError, EmptyFileError, FileSizeExceededError
    """
    file_extension = validate_file_type(filename)
    validate_file_size(len(content), max_size_mb)
    return file_extension
