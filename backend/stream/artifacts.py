"""Artifact extraction and the per-session artifact set.

Generated files surface in three places:

1. File-producing delegations (``write_file`` style invocations) and findings
   whose payload declares a path and content.
2. Prose such as "report saved to /reports/q3.md". Only the name is known, so
   the artifact carries placeholder content.
3. The thread snapshot's file table and artifact list.

All paths feed one set keyed by file name. The first artifact seen for a name
wins; later ones are dropped even when their content differs.
"""

from collections.abc import Iterator
from typing import Any

import structlog

from stream.patterns import DEFAULT_PATTERNS, HeuristicPatterns
from stream.types import Artifact, ArtifactSource, Delegation, Finding, Snapshot

logger = structlog.get_logger(__name__)

PLACEHOLDER_TEMPLATE = "File generated by agent: {name}\n\n(Full content available upstream only)"

_PATH_KEYS = ("file_path", "filename", "path")
_NAME_KEYS = ("name", "fileName", "file_name", "filename", "path", "file_path")
_CONTENT_KEYS = ("content", "data", "text")


def file_name_of(path: str) -> str:
    """Final path component, for either separator."""
    return path.replace("\\", "/").rstrip("/").split("/")[-1]


def placeholder_content(file_name: str) -> str:
    return PLACEHOLDER_TEMPLATE.format(name=file_name)


def _content_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "\n".join(str(line) for line in value)
    return None


def _first(obj: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = obj.get(key)
        if value:
            return value
    return None


class ArtifactSet:
    """Artifacts of one session, unique by file name, in discovery order."""

    def __init__(self) -> None:
        self._by_name: dict[str, Artifact] = {}

    def add(self, artifact: Artifact) -> bool:
        """Add an artifact. Returns False when the name was already taken."""
        existing = self._by_name.get(artifact.file_name)
        if existing is not None:
            if existing.content != artifact.content:
                logger.debug(
                    "artifact_duplicate_dropped",
                    file_name=artifact.file_name,
                    kept_source=existing.source.value,
                    dropped_source=artifact.source.value,
                )
            return False
        self._by_name[artifact.file_name] = artifact
        return True

    def get(self, file_name: str) -> Artifact | None:
        return self._by_name.get(file_name)

    def to_list(self) -> list[Artifact]:
        return list(self._by_name.values())

    def __contains__(self, file_name: object) -> bool:
        return file_name in self._by_name

    def __iter__(self) -> Iterator[Artifact]:
        return iter(list(self._by_name.values()))

    def __len__(self) -> int:
        return len(self._by_name)


class ArtifactExtractor:
    """Finds artifacts in units, prose and snapshots. Stateless."""

    def __init__(self, patterns: HeuristicPatterns = DEFAULT_PATTERNS) -> None:
        self._patterns = patterns

    def from_delegation(self, delegation: Delegation) -> list[Artifact]:
        tool_input = delegation.tool_input
        if not self._is_file_producing(delegation):
            return []

        path = _first(tool_input, _PATH_KEYS)
        content = _content_text(tool_input.get("content"))
        if not isinstance(path, str) or content is None:
            return []
        return [
            Artifact(
                path=path,
                file_name=file_name_of(path),
                content=content,
                source=ArtifactSource.DELEGATION,
            )
        ]

    def from_finding(self, finding: Finding) -> list[Artifact]:
        payload = finding.payload
        candidates = payload if isinstance(payload, list) else [payload]
        artifacts: list[Artifact] = []
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            path = _first(candidate, _PATH_KEYS)
            content = _content_text(candidate.get("content"))
            if isinstance(path, str) and content is not None:
                artifacts.append(
                    Artifact(
                        path=path,
                        file_name=file_name_of(path),
                        content=content,
                        source=ArtifactSource.FINDING,
                    )
                )
        return artifacts

    def from_text(self, text: str) -> list[Artifact]:
        """Scan prose for "file was saved" references."""
        if not text:
            return []
        artifacts: list[Artifact] = []
        for match in self._patterns.file_save.finditer(text):
            path = match.group(1)
            file_name = file_name_of(path)
            artifacts.append(
                Artifact(
                    path=path,
                    file_name=file_name,
                    content=placeholder_content(file_name),
                    source=ArtifactSource.TEXT_REFERENCE,
                )
            )
        return artifacts

    def from_snapshot(self, snapshot: Snapshot) -> list[Artifact]:
        artifacts: list[Artifact] = []

        files = snapshot.files
        if isinstance(files, dict):
            for path, data in files.items():
                if "/tools/" in path:
                    continue
                raw = data.get("content") if isinstance(data, dict) else data
                content = _content_text(raw)
                if not content:
                    continue
                artifacts.append(
                    Artifact(
                        path=path,
                        file_name=file_name_of(path),
                        content=content,
                        source=ArtifactSource.SNAPSHOT,
                    )
                )
        elif isinstance(files, list):
            artifacts.extend(self._from_objects(files))

        artifacts.extend(self._from_objects(snapshot.artifacts))
        return artifacts

    def _from_objects(self, items: list[Any]) -> list[Artifact]:
        artifacts: list[Artifact] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            name = _first(item, _NAME_KEYS)
            content = _content_text(_first(item, _CONTENT_KEYS))
            if not isinstance(name, str) or not content or "/tools/" in name:
                continue
            artifacts.append(
                Artifact(
                    path=str(item.get("path") or name),
                    file_name=file_name_of(name),
                    content=content,
                    source=ArtifactSource.SNAPSHOT,
                )
            )
        return artifacts

    @staticmethod
    def _is_file_producing(delegation: Delegation) -> bool:
        tool_name = delegation.tool_name.lower()
        tool_input = delegation.tool_input
        return (
            tool_name == "write_file"
            or "file" in tool_name
            or tool_input.get("subagent_type") == "write_file"
            or ("file_path" in tool_input and "content" in tool_input)
        )
