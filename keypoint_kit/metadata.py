from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Union


def _parse_names_yaml(text: str) -> Dict[int, str]:
    # Only the flat `names:` mapping of Ultralytics metadata.yaml is understood.
    names: Dict[int, str] = {}
    in_names = False
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line == "names:":
            in_names = True
            continue
        if not in_names:
            continue
        if not raw[:1].isspace():
            # next top-level key ends the block
            break
        if ":" not in line:
            continue
        left, right = line.split(":", 1)
        left = left.strip()
        right = right.strip().strip("'").strip('"')
        if not left.isdigit():
            continue
        names[int(left)] = right
    return names


def load_class_names(path: Union[str, Path]) -> Dict[int, str]:
    """
    Load class labels as {class_id: name}.

    Accepted formats:
      - JSON list, e.g. `keypoint_labels.json`: ["person"]
      - JSON object: {"0": "person"}
      - YAML metadata with a `names:` block:

            names:
              0: person
    """

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Label file not found: {p}")
    text = p.read_text(encoding="utf-8")

    if p.suffix.lower() != ".json":
        return _parse_names_yaml(text)

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid label JSON: {p}") from exc

    if isinstance(payload, list):
        if not all(isinstance(item, str) for item in payload):
            raise ValueError("Label list must contain only strings")
        return {i: name for i, name in enumerate(payload)}
    if isinstance(payload, dict):
        names: Dict[int, str] = {}
        for key, value in payload.items():
            if not str(key).isdigit() or not isinstance(value, str):
                raise ValueError(f"Invalid label entry: {key!r}: {value!r}")
            names[int(key)] = value
        return names
    raise ValueError("Label JSON must be a list or an object")


def labels_as_list(names: Dict[int, str]) -> List[str]:
    """Order labels by class id; gaps are filled with the id as text."""
    if not names:
        return []
    return [names.get(i, str(i)) for i in range(max(names) + 1)]
