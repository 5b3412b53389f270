"""
Knowledge base assembly from project documents.

A project is a directory under the configured projects directory. Each
supported file inside it is one document: plain text and markdown are read as
is, .docx files are unpacked and their paragraphs extracted, and .url files
name a page whose body is fetched on every assembly. Nothing is cached.
"""

import asyncio
import logging
import zipfile
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List, Optional

import httpx

from convai_relay.config.constants import (
    DOCUMENT_EXTENSIONS,
    DOCX_EXTENSION,
    LOGGER_NAME,
    TEXT_EXTENSIONS,
    URL_EXTENSION,
)
from convai_relay.config.settings import Settings
from convai_relay.errors import NotFoundError, UpstreamFetchError
from convai_relay.models.schemas import KnowledgeBase, ProjectSummary

logger = logging.getLogger(LOGGER_NAME)

DOCX_PARTS = ("word/document.xml",)


def extract_docx_text(path: Path) -> str:
    """
    Extract paragraph text from a .docx file.

    Args:
        path: Path of the WordprocessingML archive

    Returns:
        str: One line per non-empty paragraph, or "" if the archive has no text
    """
    paragraphs: List[str] = []
    with zipfile.ZipFile(path, "r") as zf:
        names = zf.namelist()
        for name in DOCX_PARTS:
            if name not in names:
                continue
            root = ET.fromstring(zf.read(name))
            for p in root.iter():
                if not str(p.tag).endswith("}p"):
                    continue
                parts = [t.text for t in p.iter() if str(t.tag).endswith("}t") and t.text]
                line = "".join(parts).strip()
                if line:
                    paragraphs.append(line)
    return "\n".join(paragraphs)


class ProjectStore:
    """
    Discovers projects on disk and assembles their knowledge bases.

    Args:
        settings: Relay configuration; `projects_dir` is the scan root
        transport: Optional httpx transport used for .url documents
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.root = Path(settings.projects_dir)
        self.timeout = settings.http_timeout
        self._transport = transport

    def _project_dirs(self) -> List[Path]:
        if not self.root.is_dir():
            return []
        return sorted((p for p in self.root.iterdir() if p.is_dir()), key=lambda p: p.name)

    @staticmethod
    def _documents(project_dir: Path) -> List[Path]:
        return sorted(
            (
                p
                for p in project_dir.iterdir()
                if p.is_file() and p.suffix.lower() in DOCUMENT_EXTENSIONS
            ),
            key=lambda p: p.name,
        )

    def list_projects(self) -> List[ProjectSummary]:
        """List discoverable projects; empty when the projects directory is missing."""
        return [ProjectSummary(key=p.name, title=p.name) for p in self._project_dirs()]

    def _find(self, key: str) -> Path:
        for project_dir in self._project_dirs():
            if project_dir.name == key:
                return project_dir
        raise NotFoundError(f"Unknown project: {key}")

    async def _fetch_url(self, doc: Path) -> str:
        raw = await asyncio.to_thread(doc.read_text, encoding="utf-8")
        lines = raw.strip().splitlines()
        url = lines[0].strip() if lines else ""
        if not url:
            return ""
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise UpstreamFetchError(f"fetch {url}: {e}") from e
        if not response.is_success:
            raise UpstreamFetchError(
                f"fetch {url}: {response.status_code}",
                status=response.status_code,
                body=response.text[:500],
            )
        return response.text

    async def load_document(self, doc: Path) -> str:
        """Return the text content of one document according to its extension."""
        suffix = doc.suffix.lower()
        if suffix in TEXT_EXTENSIONS:
            return await asyncio.to_thread(doc.read_text, encoding="utf-8")
        if suffix == DOCX_EXTENSION:
            return await asyncio.to_thread(extract_docx_text, doc)
        if suffix == URL_EXTENSION:
            return await self._fetch_url(doc)
        return ""

    async def assemble_kb(self, key: str) -> KnowledgeBase:
        """
        Assemble the knowledge base of project `key`.

        Raises:
            NotFoundError: If no project directory matches `key`
            UpstreamFetchError: If a .url document cannot be fetched
        """
        project_dir = self._find(key)
        docs = self._documents(project_dir)
        texts = [await self.load_document(doc) for doc in docs]
        kb = KnowledgeBase(title=project_dir.name, text="\n".join(texts))
        logger.info(f"Assembled knowledge base '{kb.title}' from {len(docs)} documents ({len(kb.text)} chars)")
        return kb
