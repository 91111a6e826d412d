"""Loading files, directories and web pages into Documents."""

import logging
from pathlib import Path
from typing import Dict, List, Sequence, Union
from urllib.parse import urlparse

from langchain_core.documents import Document as LCDocument
from langchain_community.document_loaders import (
    DirectoryLoader,
    PyMuPDFLoader,
    TextLoader,
    WebBaseLoader,
)

from .models import Document

logger = logging.getLogger(__name__)

TEXT_GLOBS = ("**/*.txt", "**/*.md", "**/*.mdx")
PDF_GLOB = "**/*.pdf"


def _is_url(source: str) -> bool:
    parsed = urlparse(source)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _title_for(source: str, metadata: Dict) -> str:
    title = (metadata.get("title") or "").strip()
    if title:
        return title
    if _is_url(source):
        return urlparse(source).netloc + urlparse(source).path.rstrip("/")
    return Path(source).stem or source


def to_documents(lc_docs: Sequence[LCDocument]) -> List[Document]:
    """
    Convert LangChain documents into Anchor documents.

    Pages that share a ``source`` (PDF pages) are joined in page order so
    each source becomes exactly one document.
    """
    grouped: Dict[str, List[LCDocument]] = {}
    for d in lc_docs:
        source = str(d.metadata.get("source", ""))
        grouped.setdefault(source, []).append(d)

    out: List[Document] = []
    for source, pages in grouped.items():
        pages = sorted(pages, key=lambda d: d.metadata.get("page", 0) or 0)
        text = "\n\n".join((p.page_content or "").strip() for p in pages).strip()
        if not text:
            logger.debug("Skipping empty source %s", source)
            continue
        metadata = {k: v for k, v in pages[0].metadata.items() if k not in ("page", "source")}
        if len(pages) > 1:
            metadata["pages"] = len(pages)
        out.append(
            Document(
                text=text,
                title=_title_for(source, pages[0].metadata),
                source=source,
                metadata=metadata,
            )
        )
    return out


def _from_url(url: str, **_) -> List[LCDocument]:
    return WebBaseLoader(web_paths=[url]).load()


def _from_directory(
    path: Path, *, recursive: bool, autodetect_encoding: bool, pdf_extract_images: bool
) -> List[LCDocument]:
    loaded: List[LCDocument] = []
    for pattern in TEXT_GLOBS:
        loaded.extend(
            DirectoryLoader(
                str(path),
                glob=pattern,
                recursive=recursive,
                loader_cls=TextLoader,
                loader_kwargs={"autodetect_encoding": autodetect_encoding},
                silent_errors=True,
            ).load()
        )
    loaded.extend(
        DirectoryLoader(
            str(path),
            glob=PDF_GLOB,
            recursive=recursive,
            loader_cls=PyMuPDFLoader,
            loader_kwargs={"extract_images": pdf_extract_images},
            silent_errors=True,
        ).load()
    )
    return loaded


def _from_file(
    path: Path, *, autodetect_encoding: bool, pdf_extract_images: bool, **_
) -> List[LCDocument]:
    if path.suffix.lower() == ".pdf":
        return PyMuPDFLoader(str(path), extract_images=pdf_extract_images).load()
    return TextLoader(str(path), autodetect_encoding=autodetect_encoding).load()


def load_sources(
    sources: Union[str, Sequence[str]],
    *,
    recursive: bool = True,
    autodetect_encoding: bool = True,
    pdf_extract_images: bool = False,
) -> List[Document]:
    """
    Load documents from URLs, directories and files.

    URLs go through ``WebBaseLoader``; directories are scanned for
    .txt/.md/.mdx/.pdf files; single files are loaded by extension.
    A source that fails to load is logged and skipped so one bad path
    never aborts the batch.

    Args:
        sources: Single source or list of sources
        recursive: Recursively scan directories
        autodetect_encoding: Auto-detect text file encoding
        pdf_extract_images: Extract images from PDFs (requires extra deps)

    Returns:
        One Document per source file or URL
    """
    if isinstance(sources, str):
        sources = [sources]
    options = {
        "recursive": recursive,
        "autodetect_encoding": autodetect_encoding,
        "pdf_extract_images": pdf_extract_images,
    }

    lc_docs: List[LCDocument] = []
    for src in sources:
        if _is_url(src):
            target, loader = src, _from_url
        else:
            target = Path(src)
            if target.is_dir():
                loader = _from_directory
            elif target.exists():
                loader = _from_file
            else:
                logger.warning("File not found: %s", src)
                continue
        try:
            loaded = loader(target, **options)
        except Exception as e:
            logger.warning("Failed to load %s: %s", src, e)
            continue
        logger.debug("Loaded %d page(s) from %s", len(loaded), src)
        lc_docs.extend(loaded)

    return to_documents(lc_docs)
