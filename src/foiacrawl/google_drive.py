"""
Public Google Drive folders and files.

Folder listings are scraped from the folder's web page, so only publicly
shared folders can be enumerated and no credentials are needed.
"""

from __future__ import annotations
import logging
import mimetypes
import re
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

import aiohttp

from .config import HttpConfig
from .errors import DriveRateLimitedError, GoogleDriveError
from .fetch import fetch

logger = logging.getLogger(__name__)

FOLDER_MIME = "application/vnd.google-apps.folder"

_FOLDER_ID_RE = re.compile(r"/folders/([a-zA-Z0-9_-]+)")
_FILE_PATH_ID_RE = re.compile(r"/d/([a-zA-Z0-9_-]+)")
_FILE_QUERY_ID_RE = re.compile(r"[?&]id=([a-zA-Z0-9_-]+)")

# ["FILE_ID","name","...","mime",size]
_EMBEDDED_FILE_RE = re.compile(
    r'\["([a-zA-Z0-9_-]{20,})","([^"]+)","([^"]*)",\s*"([^"]*)"(?:,\s*"?(\d+)"?)?'
)
_LINK_RE = re.compile(r'href="[^"]*(?:/file/d/|/open\?id=)([a-zA-Z0-9_-]{20,})[^"]*"')
_TITLE_RE = re.compile(r'title="([^"]+)"')
_TEXT_RE = re.compile(r">([^<]{3,100})<")
_PAGE_TOKEN_RE = re.compile(r"""pageToken['":\s]+['"]([^'"]+)['"]""")

def is_google_drive_folder_url(url: str) -> bool:
    return "drive.google.com/drive/folders/" in url or (
        "drive.google.com/drive/u/" in url and "/folders/" in url
    )

def is_google_drive_file_url(url: str) -> bool:
    return ("drive.google.com/file/d/" in url or "drive.google.com/uc?" in url) and "/folders/" not in url

def extract_folder_id(url: str) -> Optional[str]:
    m = _FOLDER_ID_RE.search(url)
    return m.group(1) if m else None

def extract_file_id(url: str) -> Optional[str]:
    m = _FILE_PATH_ID_RE.search(url) or _FILE_QUERY_ID_RE.search(url)
    return m.group(1) if m else None

def file_download_url(file_id: str) -> str:
    # confirm=t skips the virus-scan interstitial on large files
    return f"https://drive.google.com/uc?export=download&id={file_id}&confirm=t"

def get_direct_download_url(url: str) -> Optional[str]:
    file_id = extract_file_id(url)
    return file_download_url(file_id) if file_id else None

def guess_mime(name: str) -> str:
    return mimetypes.guess_type(name)[0] or "application/octet-stream"

@dataclass
class DriveFile:
    id: str
    name: str
    mime_type: str
    download_url: str
    parent_folder_id: str
    size: Optional[int] = None

    def is_downloadable(self) -> bool:
        return self.mime_type != FOLDER_MIME

def _name_from_context(context: str) -> Optional[str]:
    m = _TITLE_RE.search(context)
    if m:
        return m.group(1)
    for m in _TEXT_RE.finditer(context):
        text = m.group(1).strip()
        if "function" in text or "{" in text or text.startswith("//"):
            continue
        if len(text) > 3:
            return text
    return None

class DriveFolder:
    def __init__(self, folder_id: str, http_cfg: HttpConfig | None = None,
                 session: aiohttp.ClientSession | None = None):
        self.folder_id = folder_id
        self.http_cfg = http_cfg or HttpConfig()
        self.session = session

    @classmethod
    def from_url(cls, url: str, http_cfg: HttpConfig | None = None,
                 session: aiohttp.ClientSession | None = None) -> "DriveFolder":
        folder_id = extract_folder_id(url)
        if not folder_id:
            raise GoogleDriveError(f"Invalid folder URL: {url}")
        return cls(folder_id, http_cfg, session)

    async def list_files(self) -> List[DriveFile]:
        """Files and subfolders directly inside this folder."""
        logger.info(f"Enumerating Google Drive folder {self.folder_id}")
        files: List[DriveFile] = []
        token: Optional[str] = None
        seen_tokens: Set[str] = set()
        while True:
            page, token = await self._fetch_page(token)
            files.extend(page)
            if not token or token in seen_tokens:
                break
            seen_tokens.add(token)
        logger.info(f"Found {len(files)} files in folder {self.folder_id}")
        return files

    async def list_files_recursive(self) -> List[DriveFile]:
        """
        Every file below this folder. A subfolder that cannot be listed is
        skipped; failing to list this folder itself raises.
        """
        found: List[DriveFile] = []
        to_visit = [self.folder_id]
        visited: Set[str] = set()
        while to_visit:
            folder_id = to_visit.pop()
            if folder_id in visited:
                continue
            visited.add(folder_id)
            folder = DriveFolder(folder_id, self.http_cfg, self.session)
            try:
                entries = await folder.list_files()
            except GoogleDriveError as e:
                if folder_id == self.folder_id:
                    raise
                logger.warning(f"Failed to enumerate Drive folder {folder_id}: {e}")
                continue
            for entry in entries:
                if entry.mime_type == FOLDER_MIME:
                    to_visit.append(entry.id)
                else:
                    found.append(entry)
        logger.info(f"Found {len(found)} files under Drive folder {self.folder_id}")
        return found

    async def _fetch_page(self, token: Optional[str]) -> Tuple[List[DriveFile], Optional[str]]:
        url = f"https://drive.google.com/drive/folders/{self.folder_id}"
        if token:
            url += f"?pageToken={token}"
        res = await fetch(url, self.http_cfg, session=self.session)
        if res.status == 429:
            raise DriveRateLimitedError()
        if not res.ok:
            raise GoogleDriveError(res.error or f"HTTP {res.status} for {url}")
        return self.parse_folder_page(res.text())

    def parse_folder_page(self, html: str) -> Tuple[List[DriveFile], Optional[str]]:
        embedded = self._from_embedded_json(html)
        if embedded:
            return embedded, None
        m = _PAGE_TOKEN_RE.search(html)
        return self._from_links(html), (m.group(1) if m else None)

    def _from_embedded_json(self, html: str) -> List[DriveFile]:
        files: List[DriveFile] = []
        seen: Set[str] = set()
        for m in _EMBEDDED_FILE_RE.finditer(html):
            file_id, name, mime, size = m.group(1), m.group(2), m.group(4), m.group(5)
            if len(name) < 2 or file_id in seen:
                continue
            seen.add(file_id)
            files.append(DriveFile(
                id=file_id,
                name=name,
                mime_type=mime or guess_mime(name),
                download_url=file_download_url(file_id),
                parent_folder_id=self.folder_id,
                size=int(size) if size else None,
            ))
        return files

    def _from_links(self, html: str) -> List[DriveFile]:
        files: List[DriveFile] = []
        seen: Set[str] = set()
        for m in _LINK_RE.finditer(html):
            file_id = m.group(1)
            if file_id in seen:
                continue
            seen.add(file_id)
            name = _name_from_context(html[m.start():m.start() + 500]) or f"file_{file_id}"
            files.append(DriveFile(
                id=file_id,
                name=name,
                mime_type=guess_mime(name),
                download_url=file_download_url(file_id),
                parent_folder_id=self.folder_id,
            ))
        return files

async def list_folder_documents(folder_url: str, http_cfg: HttpConfig | None = None,
                                session: aiohttp.ClientSession | None = None) -> List[str]:
    """Direct-download URLs for every file under a public folder, subfolders included."""
    folder = DriveFolder.from_url(folder_url, http_cfg, session)
    return [f.download_url for f in await folder.list_files_recursive() if f.is_downloadable()]
