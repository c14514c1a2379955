import uuid
from pathlib import Path

from fuelbot.logging_config import get_logger
from fuelbot.services.errors import TransientError

logger = get_logger("storage_service")


class StorageService:
    """Stores ticket photos on local disk and returns their reference."""

    def __init__(self, transport, media_root: str):
        self.transport = transport
        self.media_root = Path(media_root)

    def save(self, photo_ref: str) -> str:
        """Download the Telegram file ``photo_ref`` and return the stored path."""
        content = self.transport.download_file(photo_ref)
        target = self.media_root / f"{uuid.uuid4().hex}.jpg"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as e:
            raise TransientError(f"Could not store photo: {e}") from e

        logger.info("Ticket photo stored", extra={"context": {"path": str(target), "bytes": len(content)}})
        return str(target)
