"""
Specification document repository.

Discovers documents under the documents directory, parses them, and keeps
the last successfully parsed copy of each so a malformed edit never makes
an entity disappear from the rest of the system.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles

from ..errors import ParseError, StateIOError
from ..models.documents import SpecDocument
from .frontmatter import parse_document

logger = logging.getLogger(__name__)


class DocumentRepository:
    """
    Loads and caches specification documents.

    Features:
    - Recursive discovery of ``*.md`` files
    - Spec id to path index
    - Last known-good fallback for malformed documents
    - Parse error tracking for reporting
    """

    def __init__(self, documents_dir: Path):
        self.documents_dir = Path(documents_dir)
        self._last_good: Dict[str, SpecDocument] = {}
        self._path_index: Dict[str, Path] = {}
        self.parse_errors: Dict[str, str] = {}

    def discover(self) -> List[Path]:
        """List candidate document files in a stable order"""
        if not self.documents_dir.exists():
            return []
        return sorted(
            path for path in self.documents_dir.rglob("*.md")
            if path.is_file() and not path.name.startswith(".")
        )

    def is_document_path(self, path: Path) -> bool:
        path = Path(path)
        if path.suffix != ".md":
            return False
        try:
            path.resolve().relative_to(self.documents_dir.resolve())
        except ValueError:
            return False
        return True

    async def read_text(self, path: Path) -> str:
        """
        Read a document's raw text.

        Raises:
            StateIOError: If the file cannot be read
        """
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                return await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise StateIOError(f"Cannot read document {path}: {e}") from e

    async def load_path(self, path: Path) -> SpecDocument:
        """
        Parse the document at ``path`` without any fallback.

        Raises:
            StateIOError: If the file cannot be read
            ParseError: If its metadata is malformed
        """
        text = await self.read_text(path)
        document = parse_document(text, source_path=Path(path))
        self.remember(document)
        return document

    def remember(self, document: SpecDocument) -> None:
        """Record a document as the last known-good copy of its entity"""
        self._last_good[document.id] = document.model_copy(deep=True)
        if document.source_path is not None:
            self._path_index[document.id] = Path(document.source_path)
            self.parse_errors.pop(str(document.source_path), None)

    def forget(self, spec_id: str) -> None:
        self._last_good.pop(spec_id, None)
        self._path_index.pop(spec_id, None)

    async def load_all(self) -> Dict[str, SpecDocument]:
        """
        Load every document, keyed by spec id.

        Malformed documents are replaced by their last good parse when one
        exists; otherwise they are skipped and reported in ``parse_errors``.
        """
        documents: Dict[str, SpecDocument] = {}
        seen_paths = set()

        for path in self.discover():
            seen_paths.add(path)
            try:
                document = await self.load_path(path)
            except (ParseError, StateIOError) as e:
                self.parse_errors[str(path)] = e.message
                fallback = self._fallback_for_path(path)
                if fallback is not None:
                    logger.warning(f"Using last known-good copy of {fallback.id}: {e.message}")
                    documents[fallback.id] = fallback.model_copy(deep=True)
                else:
                    logger.debug(f"Skipping {path}: {e.message}")
                continue

            if document.id in documents:
                kept = documents[document.id]
                logger.warning(
                    f"Duplicate spec id {document.id} in {path} and "
                    f"{kept.source_path}; keeping the first"
                )
                # load_path indexed the duplicate; point the index back
                self.remember(kept)
                continue
            documents[document.id] = document

        # Entities whose files were removed are no longer known
        for spec_id, path in list(self._path_index.items()):
            if path not in seen_paths and not path.exists():
                self.forget(spec_id)

        return documents

    async def get(self, spec_id: str) -> Optional[SpecDocument]:
        """Load one document by spec id, falling back to the last good copy"""
        path = self._path_index.get(spec_id)
        if path is None or not path.exists():
            documents = await self.load_all()
            return documents.get(spec_id)

        try:
            document = await self.load_path(path)
        except (ParseError, StateIOError) as e:
            self.parse_errors[str(path)] = e.message
            fallback = self._last_good.get(spec_id)
            if fallback is None:
                return None
            logger.warning(f"Using last known-good copy of {spec_id}: {e.message}")
            return fallback.model_copy(deep=True)

        if document.id != spec_id:
            # The file was re-labelled; rebuild the index
            self.forget(spec_id)
            return (await self.load_all()).get(spec_id)
        return document

    def path_for(self, spec_id: str) -> Optional[Path]:
        return self._path_index.get(spec_id)

    def last_good(self, spec_id: str) -> Optional[SpecDocument]:
        document = self._last_good.get(spec_id)
        return document.model_copy(deep=True) if document else None

    def written_at(self, path: Optional[Path]) -> Optional[datetime]:
        """Last modification time of a document file"""
        if path is None:
            return None
        try:
            return datetime.fromtimestamp(Path(path).stat().st_mtime)
        except OSError:
            return None

    def _fallback_for_path(self, path: Path) -> Optional[SpecDocument]:
        for spec_id, indexed_path in self._path_index.items():
            if indexed_path == path:
                return self._last_good.get(spec_id)
        return None
