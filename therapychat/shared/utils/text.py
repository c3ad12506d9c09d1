"""Small text helpers shared by routing, notification and config parsing."""
import re
from typing import Dict, Iterable, List

_LIST_SEPARATORS = re.compile(r"[,;\n]+")


def split_list(raw: str) -> List[str]:
    """Split a comma/semicolon/newline separated setting, dropping blanks
    and duplicates while keeping first-seen order.
    """
    if not raw:
        return []
    seen = []
    for item in _LIST_SEPARATORS.split(raw):
        item = item.strip()
        if item and item not in seen:
            seen.append(item)
    return seen


def build_preview(text: str, limit: int) -> str:
    """Truncate text to ``limit`` characters, appending ``...`` when cut."""
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


def replace_tokens(template: str, tokens: Dict[str, str]) -> str:
    """Fill ``{{name}}`` placeholders; unknown placeholders are left as-is."""
    result = template
    for key, value in tokens.items():
        result = result.replace("{{" + key + "}}", value or "")
    return result


def dedupe_addresses(addresses: Iterable[str]) -> List[str]:
    """Case-insensitive de-duplication of email addresses."""
    seen = set()
    unique = []
    for address in addresses:
        if not address:
            continue
        key = address.strip().lower()
        if key and key not in seen:
            seen.add(key)
            unique.append(address.strip())
    return unique
