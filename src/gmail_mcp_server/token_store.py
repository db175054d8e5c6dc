"""File-backed persistence of the single OAuth credential."""

import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import CorruptState, TokenIoError
from .models import Credential

logger = logging.getLogger(__name__)


class TokenStore:
    """Stores one Credential as a JSON document.

    Writes go to a temporary file in the same directory and are renamed over
    the target, so a concurrent reader sees either the old or the new
    document, never a partial one. Files are chmod 0600.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[Credential]:
        """Load the stored credential, or None if nothing has been saved."""
        try:
            content = self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise TokenIoError(f"Failed to read token file {self.path}: {e}") from e

        try:
            return Credential.model_validate_json(content)
        except (ValidationError, UnicodeDecodeError) as e:
            raise CorruptState(f"Token file {self.path} is not a valid credential: {e}") from e

    def save(self, credential: Credential) -> None:
        """Atomically replace the stored credential."""
        data = credential.model_dump_json(indent=2)
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, stat.S_IRUSR | stat.S_IWUSR)
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise TokenIoError(f"Failed to write token file {self.path}: {e}") from e
        logger.info(f"Saved credentials to {self.path}")
