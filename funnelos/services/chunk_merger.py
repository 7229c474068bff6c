from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from funnelos.errors import MergeValidationError
from funnelos.services.chunk_executor import ChunkOutcome
from funnelos.services.section_schemas import CHUNKED_SECTION_FIELDS, SchemaValidationError, validate_chunked_field

logger = logging.getLogger(__name__)

_MAX_LISTED_FIELDS = 10


@dataclass
class MergedDocument:
    section_id: str
    content: dict[str, Any]
    expected_field_count: int
    populated_field_count: int
    empty_field_count: int
    missing_fields: list[str] = field(default_factory=list)
    empty_fields: list[str] = field(default_factory=list)
    failed_chunks: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple)):
        return len(value) == 0 or all(_is_blank(item) for item in value)
    if isinstance(value, dict):
        return len(value) == 0 or all(_is_blank(item) for item in value.values())
    return False


def _unique_leaves(owned_fields: Sequence[str]) -> dict[str, str]:
    """Map a bare leaf name to its nested path when exactly one owned field ends in it."""
    top_level = {path for path in owned_fields if "." not in path}
    counts: dict[str, list[str]] = {}
    for path in owned_fields:
        if "." in path:
            counts.setdefault(path.rsplit(".", 1)[1], []).append(path)
    return {leaf: paths[0] for leaf, paths in counts.items() if len(paths) == 1 and leaf not in top_level}


def _read_field(parsed: dict[str, Any], field_path: str, unique_leaves: dict[str, str]) -> tuple[Any, bool]:
    """Return the value for `field_path` and whether it came from a bare top-level leaf."""
    current: Any = parsed
    for part in field_path.split("."):
        if not isinstance(current, dict) or part not in current:
            current = None
            break
        current = current[part]
    if current is not None:
        return current, False
    # Models sometimes flatten nested groups; accept "group.leaf", or the bare leaf when only this field owns it.
    if "." in field_path:
        if field_path in parsed:
            return parsed[field_path], False
        leaf = field_path.rsplit(".", 1)[1]
        if unique_leaves.get(leaf) == field_path and parsed.get(leaf) is not None:
            return parsed[leaf], True
    return None, False


def _assign(content: dict[str, Any], field_path: str, value: Any) -> None:
    parts = field_path.split(".")
    cursor = content
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value


def _unowned_keys(outcome: ChunkOutcome) -> list[str]:
    owned = outcome.chunk.owned_field_set
    groups = {path.split(".", 1)[0] for path in owned if "." in path}
    leaves = set(_unique_leaves(outcome.chunk.owned_fields))
    unowned: list[str] = []
    for key, value in (outcome.parsed or {}).items():
        if key in owned or key in leaves:
            continue
        if key in groups and isinstance(value, dict):
            unowned.extend(f"{key}.{sub}" for sub in value if f"{key}.{sub}" not in owned)
            continue
        unowned.append(key)
    return unowned


def _listed(paths: Sequence[str]) -> str:
    shown = ", ".join(paths[:_MAX_LISTED_FIELDS])
    if len(paths) > _MAX_LISTED_FIELDS:
        shown += f" (+{len(paths) - _MAX_LISTED_FIELDS} more)"
    return shown


def merge(section_id: str, outcomes: Sequence[ChunkOutcome]) -> MergedDocument:
    """
    Combine chunk outputs into the section document.

    Each field is taken only from the chunk that owns it and written in the
    declared schema order. A failed chunk leaves its fields absent. Shortfalls
    become warnings; zero successful chunks or zero populated fields raise
    MergeValidationError.
    """
    declared = CHUNKED_SECTION_FIELDS[section_id]
    owners: dict[str, ChunkOutcome] = {}
    for outcome in outcomes:
        for field_path in outcome.chunk.owned_fields:
            owners[field_path] = outcome

    failed_chunks = {outcome.chunk.chunk_id: outcome.error or "no output" for outcome in outcomes if not outcome.ok}
    if not any(outcome.ok for outcome in outcomes):
        logger.error(
            "Chunk merge failed: no chunk succeeded",
            extra={"section_id": section_id, "failed_chunks": failed_chunks},
        )
        raise MergeValidationError(
            section_id,
            f"All {len(outcomes)} chunks failed for {section_id}",
            chunk_errors=failed_chunks,
        )

    warnings: list[str] = []
    for chunk_id, error in failed_chunks.items():
        warnings.append(f"Chunk {chunk_id} failed: {error}")
    for outcome in outcomes:
        if outcome.ok:
            stray = _unowned_keys(outcome)
            if stray:
                warnings.append(f"Ignored keys not owned by chunk {outcome.chunk.chunk_id}: {_listed(stray)}")

    content: dict[str, Any] = {}
    missing: list[str] = []
    empty: list[str] = []
    flattened: list[str] = []
    leaves_by_chunk = {outcome.chunk.chunk_id: _unique_leaves(outcome.chunk.owned_fields) for outcome in outcomes}
    for field_path in declared:
        outcome = owners.get(field_path)
        if outcome is None or not outcome.ok:
            missing.append(field_path)
            continue
        value, from_leaf = _read_field(outcome.parsed, field_path, leaves_by_chunk[outcome.chunk.chunk_id])
        if value is None:
            missing.append(field_path)
            continue
        if from_leaf:
            flattened.append(field_path)
        try:
            value, strip_warnings = validate_chunked_field(section_id, field_path, value)
        except SchemaValidationError:
            warnings.append(f"Discarded invalid value for {field_path}")
            missing.append(field_path)
            continue
        warnings.extend(strip_warnings)
        _assign(content, field_path, value)
        if _is_blank(value):
            empty.append(field_path)

    populated = len(declared) - len(missing)
    if populated == 0:
        logger.error(
            "Chunk merge failed: no populated fields",
            extra={"section_id": section_id, "failed_chunks": failed_chunks},
        )
        raise MergeValidationError(
            section_id,
            f"Merged {section_id} document has no populated fields",
            chunk_errors=failed_chunks,
        )

    if flattened:
        warnings.append(f"Read {len(flattened)} fields from bare top-level keys: {_listed(flattened)}")
    if missing:
        warnings.append(f"{len(missing)} of {len(declared)} fields missing: {_listed(missing)}")
    if empty:
        warnings.append(f"{len(empty)} fields are empty: {_listed(empty)}")
    if warnings:
        logger.warning(
            "Chunk merge completed with shortfalls",
            extra={
                "section_id": section_id,
                "populated": populated,
                "expected": len(declared),
                "empty": len(empty),
                "failed_chunks": sorted(failed_chunks),
            },
        )

    return MergedDocument(
        section_id=section_id,
        content=content,
        expected_field_count=len(declared),
        populated_field_count=populated,
        empty_field_count=len(empty),
        missing_fields=missing,
        empty_fields=empty,
        failed_chunks=failed_chunks,
        warnings=warnings,
    )
