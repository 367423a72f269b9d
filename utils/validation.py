"""
================================================================================
STRUCTURED OUTPUT VALIDATION
================================================================================
Every analysis stage asks the model for one fenced ```yaml block. A schema per
stage extracts that block, parses it and validates it in one pass:

    AbstractionListSchema  - list of {name, description, file_indices}
    RelationshipSchema     - {summary, relationships: [{from_abstraction,
                              to_abstraction, label}]}
    ChapterOrderSchema     - list of abstraction indices (a permutation)

Index references may be a bare integer or a string such as "3 # path/to/x.py".
Only the leading integer counts.

Failures:
    MalformedOutput   - no fenced block, unparsable block, wrong shape
    InvalidReference  - index not a non-negative integer within range
    IncompleteOrder   - chapter order omits or duplicates an index
================================================================================
"""

import re
from typing import Any, List

import yaml

from utils.errors import MalformedOutput, InvalidReference, IncompleteOrder
from utils.models import Abstraction, Relationship, RelationshipData

_FENCED_BLOCK = re.compile(r"```([^\n`]*)\r?\n(.*?)```", re.DOTALL)
_YAML_TAGS = ("yaml", "yml")
_FALLBACK_TAGS = ("", "json")
_LEADING_INT = re.compile(r"^\s*(\d+)(?![\d.])")


def extract_fenced_block(text: str) -> str:
    """
    Return the body of the first ```yaml block in the model output, or of the
    first untagged block when there is no yaml one. Blocks in other languages
    (```python, ```mermaid) are skipped.
    """
    blocks = [(m.group(1).strip().lower(), m.group(2)) for m in _FENCED_BLOCK.finditer(text or "")]
    for wanted in (_YAML_TAGS, _FALLBACK_TAGS):
        for tag, body in blocks:
            if tag in wanted:
                return body.strip()
    raise MalformedOutput("No fenced ```yaml block found in LLM output")


def load_fenced_block(text: str) -> Any:
    block = extract_fenced_block(text)
    try:
        return yaml.safe_load(block)
    except yaml.YAMLError as e:
        raise MalformedOutput(f"Could not parse fenced block: {e}") from e


def parse_index(entry: Any, limit: int, what: str = "index") -> int:
    """
    Parse one index reference and check 0 <= idx < limit.

    Accepts an int or a string whose leading token is an int ("2 # Name").
    """
    if isinstance(entry, bool):
        raise InvalidReference(f"Could not parse {what} from entry: {entry!r}")
    if isinstance(entry, int):
        idx = entry
    elif isinstance(entry, str):
        match = _LEADING_INT.match(entry)
        if not match:
            raise InvalidReference(f"Could not parse {what} from entry: {entry!r}")
        idx = int(match.group(1))
    else:
        raise InvalidReference(f"Could not parse {what} from entry: {entry!r}")

    if not 0 <= idx < limit:
        raise InvalidReference(f"Invalid {what} {idx}. Valid range is 0..{limit - 1}")
    return idx


def _require_keys(item: Any, keys, kind: str) -> dict:
    if not isinstance(item, dict) or not all(k in item for k in keys):
        raise MalformedOutput(f"Missing keys {list(keys)} in {kind} item: {item!r}")
    return item


def _require_str(value: Any, field_name: str, item: Any) -> str:
    if not isinstance(value, str):
        raise MalformedOutput(f"{field_name} is not a string in item: {item!r}")
    return value.strip()


class OutputSchema:
    """Base for the per-stage schemas: parse = extract + load + validate."""

    kind = "output"

    def parse(self, text: str, count: int):
        return self.validate(load_fenced_block(text), count)

    def validate(self, data: Any, count: int):
        raise NotImplementedError


class AbstractionListSchema(OutputSchema):
    kind = "abstraction list"

    def validate(self, data: Any, file_count: int) -> List[Abstraction]:
        if not isinstance(data, list) or not data:
            raise MalformedOutput("LLM output is not a non-empty list of abstractions")

        abstractions = []
        for item in data:
            _require_keys(item, ("name", "description", "file_indices"), self.kind)
            name = _require_str(item["name"], "name", item)
            description = _require_str(item["description"], "description", item)
            if not isinstance(item["file_indices"], list):
                raise MalformedOutput(f"file_indices is not a list in item: {item!r}")

            indices = {parse_index(entry, file_count, "file index") for entry in item["file_indices"]}
            abstractions.append(Abstraction(name=name, description=description, files=sorted(indices)))
        return abstractions


class RelationshipSchema(OutputSchema):
    kind = "relationships"

    def validate(self, data: Any, abstraction_count: int) -> RelationshipData:
        _require_keys(data, ("summary", "relationships"), self.kind)
        summary = _require_str(data["summary"], "summary", data)
        if not isinstance(data["relationships"], list):
            raise MalformedOutput("relationships is not a list")

        details = []
        for rel in data["relationships"]:
            _require_keys(rel, ("from_abstraction", "to_abstraction", "label"), "relationship")
            label = _require_str(rel["label"], "label", rel)
            details.append(Relationship(
                source=parse_index(rel["from_abstraction"], abstraction_count, "abstraction index"),
                target=parse_index(rel["to_abstraction"], abstraction_count, "abstraction index"),
                label=label,
            ))
        return RelationshipData(summary=summary, details=details)


class ChapterOrderSchema(OutputSchema):
    kind = "chapter order"

    def validate(self, data: Any, abstraction_count: int) -> List[int]:
        if not isinstance(data, list):
            raise MalformedOutput("LLM output is not a list")

        order: List[int] = []
        seen = set()
        for entry in data:
            idx = parse_index(entry, abstraction_count, "abstraction index")
            if idx in seen:
                raise IncompleteOrder(f"Duplicate index {idx} found in ordered list")
            seen.add(idx)
            order.append(idx)

        if len(order) != abstraction_count:
            missing = sorted(set(range(abstraction_count)) - seen)
            raise IncompleteOrder(
                f"Ordered list length ({len(order)}) does not match number of "
                f"abstractions ({abstraction_count}). Missing indices: {missing}"
            )
        return order


def uncovered_abstractions(relationships: RelationshipData, abstraction_count: int) -> List[int]:
    """Abstraction indices that appear in no relationship, as source or target."""
    covered = set()
    for rel in relationships.details:
        covered.add(rel.source)
        covered.add(rel.target)
    return [i for i in range(abstraction_count) if i not in covered]
