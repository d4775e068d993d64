"""
Calendar bucketing of dump artifacts.

Flat grouping (one composite key per bucket) feeds the retention engine;
the nested year/month/day tree feeds listings.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .artifact import DumpArtifact, InvalidPeriod


BUCKET_FORMATS = {
    'year': '%Y',
    'month': '%Y-%m',
    'day': '%Y-%m-%d',
}

# Level name and the strftime of that level's own key
TREE_LEVELS = [('year', '%Y'), ('month', '%m'), ('day', '%d')]


def _check_field(field: str):
    if field not in BUCKET_FORMATS:
        raise InvalidPeriod(
            f"Cannot group by '{field}'. Available fields: {', '.join(BUCKET_FORMATS)}"
        )


def bucket_key(artifact: DumpArtifact, field: str) -> str:
    """Composite bucket key of an artifact, e.g. '2024-01' for month."""
    _check_field(field)
    return artifact.time().strftime(BUCKET_FORMATS[field])


def group_by_calendar_field(artifacts: Iterable[DumpArtifact], field: str) -> Dict[str, List[DumpArtifact]]:
    """
    Group artifacts by year, month or day.

    Buckets appear in order of first occurrence and keep input order inside,
    so a newest-first input yields newest-first buckets.

    Raises:
        InvalidPeriod: If field is not year, month or day
    """
    _check_field(field)
    fmt = BUCKET_FORMATS[field]

    groups: Dict[str, List[DumpArtifact]] = {}
    for artifact in artifacts:
        groups.setdefault(artifact.time().strftime(fmt), []).append(artifact)
    return groups


@dataclass(frozen=True)
class DumpNode:
    """
    Listing tree node.

    kind == 'branch': period/key/children are set, artifact is None.
    kind == 'leaf': artifact is set, children is empty.
    """
    kind: str
    period: str = ''
    key: str = ''
    children: Tuple['DumpNode', ...] = ()
    artifact: Optional[DumpArtifact] = None

    @classmethod
    def leaf(cls, artifact: DumpArtifact) -> 'DumpNode':
        return cls(kind='leaf', period='dump', key=artifact.name, artifact=artifact)

    @classmethod
    def branch(cls, period: str, key: str, children: Tuple['DumpNode', ...]) -> 'DumpNode':
        return cls(kind='branch', period=period, key=key, children=children)


def build_dump_tree(artifacts: Iterable[DumpArtifact], levels=None) -> List[DumpNode]:
    """Nest artifacts into year -> month -> day branches with artifact leaves."""
    levels = TREE_LEVELS if levels is None else levels
    artifacts = list(artifacts)

    if not levels:
        return [DumpNode.leaf(a) for a in artifacts]

    (period, fmt), rest = levels[0], levels[1:]
    groups: Dict[str, List[DumpArtifact]] = {}
    for artifact in artifacts:
        groups.setdefault(artifact.time().strftime(fmt), []).append(artifact)

    return [
        DumpNode.branch(period, key, tuple(build_dump_tree(members, rest)))
        for key, members in groups.items()
    ]


def tree_to_dict(nodes: Iterable[DumpNode]) -> List[dict]:
    """Serialize a dump tree for JSON responses."""
    serializers = {
        'leaf': lambda node: node.artifact.to_dict(),
        'branch': lambda node: {
            'period': node.period,
            'key': node.key,
            'count': count_dumps(node.children),
            'children': tree_to_dict(node.children),
        },
    }
    return [serializers[node.kind](node) for node in nodes]


def count_dumps(nodes: Iterable[DumpNode]) -> int:
    return sum(1 if node.kind == 'leaf' else count_dumps(node.children) for node in nodes)
