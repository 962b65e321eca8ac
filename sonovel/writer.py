from __future__ import annotations

import html
import logging
import os
import re
import shutil
import uuid
import zipfile
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .errors import ConfigError
from .models import Book, Chapter

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*]')
PARAGRAPH_INDENT = "　　"


def sanitize_filename(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name).strip()


def book_filename(book: Book, ext: str) -> str:
    return sanitize_filename(f"{book.book_name}({book.author}).{ext}")


def _paragraphs(content: str) -> List[str]:
    return [line.strip() for line in content.splitlines() if line.strip()]


class ChapterCache:
    """Per-book directory holding one `<order>_<title>.txt` file per chapter.

    Files are written as chapters arrive, so a failed or cancelled download
    leaves what was fetched so far when the cache is preserved.
    """

    def __init__(self, directory: str, total: int) -> None:
        self.directory = directory
        self._width = len(str(max(total, 1)))

    @classmethod
    def for_book(cls, base: str, book: Book, fmt: str, total: int) -> "ChapterCache":
        name = sanitize_filename(f"{book.book_name} ({book.author}) {fmt.upper()}")
        return cls(os.path.join(base, name), total)

    def path_for(self, chapter: Chapter) -> str:
        name = sanitize_filename(f"{chapter.order:0{self._width}d}_{chapter.title}.txt")
        return os.path.join(self.directory, name)

    def save(self, chapter: Chapter, content: str) -> str:
        os.makedirs(self.directory, exist_ok=True)
        path = self.path_for(chapter)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        return path

    def clear(self) -> None:
        if os.path.isdir(self.directory):
            shutil.rmtree(self.directory)
            logger.debug("removed chapter cache %s", self.directory)


class ContainerWriter(ABC):
    """Assembles a book and its ordered chapters into one file."""

    extension = ""
    embeds_cover = False

    def write(
        self, book: Book, chapters: Sequence[Chapter], directory: str, cover: Optional[bytes] = None
    ) -> str:
        """Write the artifact into `directory` and return its path."""
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, book_filename(book, self.extension))
        ordered = sorted(chapters, key=lambda c: c.order)
        self._write(book, ordered, path, cover)
        logger.info("wrote %s (%d chapter(s))", path, len(ordered))
        return path

    @abstractmethod
    def _write(self, book: Book, chapters: Sequence[Chapter], path: str, cover: Optional[bytes]) -> None:
        ...


class TxtWriter(ContainerWriter):
    extension = "txt"

    def render(self, book: Book, chapters: Sequence[Chapter]) -> str:
        out = [f"书名：{book.book_name}\n作者：{book.author}\n简介：{book.intro}\n\n"]
        for chapter in chapters:
            out.append(f"{chapter.title}\n\n")
            for p in _paragraphs(chapter.content):
                out.append(f"{PARAGRAPH_INDENT}{p}\n")
            out.append("\n")
        return "".join(out)

    def _write(self, book: Book, chapters: Sequence[Chapter], path: str, cover: Optional[bytes]) -> None:
        with open(path, "w", encoding="utf-8") as f:
            f.write(self.render(book, chapters))


def image_type(data: bytes) -> Tuple[str, str]:
    """(extension, media type) sniffed from the leading bytes; JPEG when unknown."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png", "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "gif", "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp", "image/webp"
    return "jpg", "image/jpeg"


class EpubWriter(ContainerWriter):
    """Minimal EPUB 2: stored mimetype, container.xml, OPF, NCX, one XHTML per chapter.

    A cover image, when given, is added to the manifest and flagged with
    the `cover` meta entry; no separate cover page is generated.
    """

    extension = "epub"
    embeds_cover = True

    def _write(self, book: Book, chapters: Sequence[Chapter], path: str, cover: Optional[bytes]) -> None:
        files = self.render(book, chapters, cover)
        with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
            # must be the first entry and uncompressed
            zf.writestr("mimetype", "application/epub+zip", compress_type=zipfile.ZIP_STORED)
            for name, content in files.items():
                zf.writestr(name, content)

    def render(
        self, book: Book, chapters: Sequence[Chapter], cover: Optional[bytes] = None
    ) -> Dict[str, Union[str, bytes]]:
        title = html.escape(book.book_name)
        author = html.escape(book.author)
        intro = html.escape(book.intro)
        uid = f"urn:uuid:{uuid.uuid5(uuid.NAMESPACE_URL, book.url or book.book_name)}"

        files: Dict[str, Union[str, bytes]] = {
            "META-INF/container.xml": (
                "<?xml version='1.0' encoding='utf-8'?>\n"
                "<container version='1.0' xmlns='urn:oasis:names:tc:opendocument:xmlns:container'>\n"
                "  <rootfiles>\n"
                "    <rootfile full-path='OEBPS/content.opf' media-type='application/oebps-package+xml'/>\n"
                "  </rootfiles>\n"
                "</container>\n"
            )
        }
        manifest: List[str] = []
        spine: List[str] = []
        nav: List[str] = []
        cover_meta = ""
        if cover:
            ext, media_type = image_type(cover)
            files[f"OEBPS/Images/cover.{ext}"] = cover
            manifest.append(f"<item id='cover-image' href='Images/cover.{ext}' media-type='{media_type}'/>")
            cover_meta = "    <meta name='cover' content='cover-image'/>\n"
        for idx, chapter in enumerate(chapters, start=1):
            name = f"Text/chapter{idx:04d}.xhtml"
            chap_title = html.escape(chapter.title)
            body = "\n".join(f"<p>{html.escape(p)}</p>" for p in _paragraphs(chapter.content))
            files[f"OEBPS/{name}"] = (
                "<?xml version='1.0' encoding='utf-8'?>\n"
                "<html xmlns='http://www.w3.org/1999/xhtml'>\n"
                f"<head><title>{chap_title}</title></head>\n"
                f"<body>\n<h2>{chap_title}</h2>\n{body}\n</body>\n"
                "</html>\n"
            )
            manifest.append(f"<item id='chap{idx}' href='{name}' media-type='application/xhtml+xml'/>")
            spine.append(f"<itemref idref='chap{idx}'/>")
            nav.append(
                f"<navPoint id='navPoint-{idx}' playOrder='{idx}'>"
                f"<navLabel><text>{chap_title}</text></navLabel>"
                f"<content src='{name}'/></navPoint>"
            )

        files["OEBPS/content.opf"] = (
            "<?xml version='1.0' encoding='utf-8'?>\n"
            "<package xmlns='http://www.idpf.org/2007/opf' unique-identifier='BookId' version='2.0'>\n"
            "  <metadata xmlns:dc='http://purl.org/dc/elements/1.1/' xmlns:opf='http://www.idpf.org/2007/opf'>\n"
            f"    <dc:title>{title}</dc:title>\n"
            f"    <dc:creator>{author}</dc:creator>\n"
            f"    <dc:description>{intro}</dc:description>\n"
            f"    <dc:identifier id='BookId'>{uid}</dc:identifier>\n"
            "    <dc:language>zh</dc:language>\n"
            f"{cover_meta}"
            "  </metadata>\n"
            "  <manifest>\n"
            "    <item id='ncx' href='toc.ncx' media-type='application/x-dtbncx+xml'/>\n"
            "    " + "\n    ".join(manifest) + "\n"
            "  </manifest>\n"
            "  <spine toc='ncx'>\n"
            "    " + "\n    ".join(spine) + "\n"
            "  </spine>\n"
            "</package>\n"
        )
        files["OEBPS/toc.ncx"] = (
            "<?xml version='1.0' encoding='utf-8'?>\n"
            "<ncx xmlns='http://www.daisy.org/z3986/2005/ncx/' version='2005-1'>\n"
            f"  <head><meta name='dtb:uid' content='{uid}'/></head>\n"
            f"  <docTitle><text>{title}</text></docTitle>\n"
            "  <navMap>\n    " + "\n    ".join(nav) + "\n  </navMap>\n"
            "</ncx>\n"
        )
        return files


WRITERS = {"txt": TxtWriter, "epub": EpubWriter}


def writer_for(fmt: str) -> ContainerWriter:
    cls = WRITERS.get(fmt.lower())
    if cls is None:
        raise ConfigError(f"unsupported output format: {fmt}")
    return cls()
