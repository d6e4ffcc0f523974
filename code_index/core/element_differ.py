"""
Element-level change detection.

Compares a file's previously indexed elements with freshly parsed ones so
that only new or modified elements are re-embedded.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping

from code_index.core.models import CodeElement

# Bump when the hashed fields or their serialization change; every stored
# element hash then mismatches and the whole project is re-embedded.
ELEMENT_HASH_VERSION = "2"


def compute_element_hash(element: CodeElement) -> str:
    payload = {
        "v": ELEMENT_HASH_VERSION,
        "type": element.type.value,
        "name": element.name,
        "content": element.content,
        "start_line": element.start_line,
        "end_line": element.end_line,
        "parameters": [[p.name, p.type] for p in element.parameters],
        "return_type": element.return_type,
        "doc_comment": element.doc_comment,
        "modifiers": list(element.modifiers),
        "imports": list(element.imports),
        "exports": list(element.exports),
        "complexity": element.complexity,
    }
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


@dataclass
class ElementRecord:
    """What is remembered about one indexed element between runs."""
    element_hash: str
    vector_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"element_hash": self.element_hash, "vector_id": self.vector_id}


@dataclass
class ElementDiff:
    unchanged: Dict[str, ElementRecord] = field(default_factory=dict)
    changed: List[CodeElement] = field(default_factory=list)
    removed: Dict[str, ElementRecord] = field(default_factory=dict)
    # previous records of changed elements, replaced once re-embedded
    replaced: Dict[str, ElementRecord] = field(default_factory=dict)
    # element key -> hash for every current element
    current_hashes: Dict[str, str] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return bool(self.changed or self.removed)


def diff_elements(
    previous: Mapping[str, ElementRecord],
    current: Iterable[CodeElement],
) -> ElementDiff:
    """
    Split ``current`` against ``previous`` (keyed by ``type:name:startLine``).

    unchanged: same key, same hash; the stored document is reused.
    changed: new key or different hash; must be re-embedded.
    removed: previous keys that are not present anymore.

    A changed element keeps its document id, so its old record goes to
    ``replaced`` and the document is overwritten only once a new embedding
    exists.
    """
    diff = ElementDiff()
    seen = set()
    for element in current:
        key = element.key
        if key in seen:
            # Duplicate keys collapse onto the first occurrence.
            continue
        seen.add(key)
        element_hash = compute_element_hash(element)
        diff.current_hashes[key] = element_hash
        record = previous.get(key)
        if record is not None and record.element_hash == element_hash:
            diff.unchanged[key] = record
        else:
            diff.changed.append(element)
            if record is not None:
                diff.replaced[key] = record

    for key, record in previous.items():
        if key not in seen:
            diff.removed[key] = record
    return diff
