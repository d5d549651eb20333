"""Rendering and checksum stamping of Kubernetes manifests"""

from typing import Any, Dict, Iterable, List, Tuple

import yaml

from ..errors import ConfigError
from ..engine.state import sha256_text

CHECKSUM_ANNOTATION = "homekube.io/checksum"


def render(documents: Iterable[Dict[str, Any]]) -> str:
    """Serialize manifest documents into one multi-document YAML payload"""
    return yaml.safe_dump_all(list(documents), default_flow_style=False, sort_keys=False)


def parse(content: str) -> List[Dict[str, Any]]:
    """Load the non-empty documents of a YAML payload"""
    try:
        docs = [d for d in yaml.safe_load_all(content) if d]
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid manifest: {e}") from e
    for doc in docs:
        if not isinstance(doc, dict) or "kind" not in doc or not doc.get("metadata", {}).get("name"):
            raise ConfigError("Every manifest document needs a kind and metadata.name")
    return docs


def stamp(content: str) -> Tuple[str, str]:
    """Annotate every document with the checksum of the original payload.

    Returns the stamped payload and the checksum.
    """
    checksum = sha256_text(content)
    docs = parse(content)
    for doc in docs:
        annotations = doc.setdefault("metadata", {}).setdefault("annotations", {}) or {}
        annotations[CHECKSUM_ANNOTATION] = checksum
        doc["metadata"]["annotations"] = annotations
    return render(docs), checksum


def checksum_of(obj: Dict[str, Any]) -> Any:
    return ((obj.get("metadata") or {}).get("annotations") or {}).get(CHECKSUM_ANNOTATION)
