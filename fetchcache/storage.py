from abc import ABC, abstractmethod
import json
import logging
from pathlib import Path
import shutil
import tempfile
from typing import Any, Dict, Optional

from .util import DataclassJSONEncoder


logger = logging.getLogger(__name__)


class CorruptMetadata(Exception):
    def __init__(self, location: str):
        super().__init__('Corrupt cache metadata at {}'.format(location))
        self.__location = location

    @property
    def location(self) -> str:
        return self.__location


class MetadataStorage(ABC):
    """
    Durable storage for a cache's metadata document.

    The document is a JSON object holding `metadata` (one record per entry, never the response bodies), `stats` and
    `config`. It survives restarts so that statistics and configuration carry over.
    """

    @abstractmethod
    def load(self) -> Optional[Dict[str, Any]]:
        """
        Read the stored document.

        @return
          The document, or `None` if nothing has been stored yet.
        @throws CorruptMetadata
          If the stored document could not be decoded.
        """

    @abstractmethod
    def save(self, document: Dict[str, Any]) -> None:
        """
        Replace the stored document.

        @throws TypeError
          If the document cannot be serialized.
        @throws OSError
          If the document cannot be written.
        """


class InMemoryMetadataStorage(MetadataStorage):
    """
    Keeps the serialized document in memory. Useful for tests and for caches that should start cold every time.
    """

    def __init__(self) -> None:
        self.__serialized: Optional[str] = None

    def load(self) -> Optional[Dict[str, Any]]:
        if self.__serialized is None:
            return None
        return json.loads(self.__serialized)

    def save(self, document: Dict[str, Any]) -> None:
        self.__serialized = json.dumps(document, cls=DataclassJSONEncoder)


class FileMetadataStorage(MetadataStorage):
    def __init__(self, path: Path) -> None:
        self.__path = Path(path)

    @property
    def path(self) -> Path:
        return self.__path

    def load(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.__path, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except FileNotFoundError:
            logger.info('No cache metadata stored at {}'.format(self.__path))
            return None
        except ValueError:
            # Undecodable bytes as well as malformed JSON.
            raise CorruptMetadata(str(self.__path))

        if not isinstance(document, dict):
            raise CorruptMetadata(str(self.__path))
        return document

    def save(self, document: Dict[str, Any]) -> None:
        serialized = json.dumps(document, cls=DataclassJSONEncoder)

        # Write to a temporary file first so a failed write never leaves a partial document behind.
        self.__path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = tempfile.NamedTemporaryFile(mode='w', encoding='utf-8', delete=False, dir=str(self.__path.parent))
        try:
            with temp_file as f:
                f.write(serialized)
            shutil.move(temp_file.name, str(self.__path))
        except Exception:
            Path(temp_file.name).unlink(missing_ok=True)
            raise
