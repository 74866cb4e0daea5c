"""
Static filename heuristics.

Extension → category table and the folder-context checks the
confidence engine and the heuristic provider share.
"""

import re
from typing import Dict, List, Optional, Set

EXTENSION_CATEGORIES: Dict[str, List[str]] = {
    "Documents": ["pdf", "doc", "docx", "txt", "rtf", "odt", "pages", "md", "tex"],
    "Spreadsheets": ["xls", "xlsx", "csv", "numbers", "ods"],
    "Presentations": ["ppt", "pptx", "key", "odp"],
    "Images": ["jpg", "jpeg", "png", "gif", "bmp", "tiff", "heic", "webp", "svg",
               "raw", "cr2", "nef"],
    "Videos": ["mp4", "mov", "avi", "mkv", "wmv", "flv", "webm", "m4v"],
    "Audio": ["mp3", "wav", "aac", "flac", "m4a", "ogg", "wma", "aiff"],
    "Archives": ["zip", "rar", "7z", "tar", "gz", "bz2", "dmg", "iso"],
    "Code": ["swift", "py", "js", "ts", "java", "c", "cpp", "h", "rb", "go", "rs", "kt"],
    "Data": ["json", "xml", "yaml", "yml", "plist", "sqlite", "db"],
    "Ebooks": ["epub", "mobi", "azw", "azw3", "fb2"],
}

_EXTENSION_INDEX: Dict[str, str] = {
    ext: category for category, exts in EXTENSION_CATEGORIES.items() for ext in exts
}

_TOKEN = re.compile(r"[0-9a-z]+")

STOP_WORDS = frozenset({
    "the", "and", "for", "with", "from", "copy", "final", "new", "file", "untitled",
})


def clean_extension(extension: Optional[str]) -> str:
    return (extension or "").lower().lstrip(".")


def category_for_extension(extension: Optional[str]) -> Optional[str]:
    """Broad category for an extension, or None if unknown."""
    return _EXTENSION_INDEX.get(clean_extension(extension))


def extension_bonus(extension: Optional[str], suggested_category: Optional[str]) -> float:
    """
    How far the extension supports the suggested category.

    1.0 when the extension's category and the suggestion contain one
    another (case-insensitive), 0.5 for a known extension that disagrees,
    0.3 for an unknown extension, 0.0 without an extension.
    """
    ext = clean_extension(extension)
    if not ext:
        return 0.0
    category = _EXTENSION_INDEX.get(ext)
    if category is None:
        return 0.3
    if suggested_category:
        a = category.lower()
        b = suggested_category.lower()
        if a in b or b in a:
            return 1.0
    return 0.5


def tokenize(text: Optional[str]) -> Set[str]:
    return set(_TOKEN.findall((text or "").lower()))


def parent_folder_bonus(parent_folder: Optional[str], suggested_category: Optional[str]) -> float:
    """
    How far the containing folder supports the suggested category path.

    0.8 when the folder name and any path component contain one another,
    0.5 when they share a word, 0.2 otherwise, 0.0 with no folder or
    no suggestion.
    """
    if not parent_folder or not suggested_category:
        return 0.0
    folder = parent_folder.strip().lower()
    components = [c.strip().lower() for c in suggested_category.split("/") if c.strip()]
    for component in components:
        if folder and (folder in component or component in folder):
            return 0.8
    if tokenize(folder) & tokenize(suggested_category):
        return 0.5
    return 0.2


def extract_keywords(filename: str, limit: int = 5) -> List[str]:
    """Distinct meaningful words from a filename, in order of appearance."""
    stem = filename.rsplit(".", 1)[0] if "." in filename else filename
    stem = re.sub(r"(?<=[a-z])(?=[A-Z])", " ", stem)
    seen: List[str] = []
    for token in _TOKEN.findall(stem.lower()):
        if len(token) < 3 or token.isdigit() or token in STOP_WORDS:
            continue
        if token not in seen:
            seen.append(token)
        if len(seen) >= limit:
            break
    return seen
