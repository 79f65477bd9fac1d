"""Convert between the nested authoring tree and flat question rows."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
import itertools
from typing import Any, Iterable

from .models import QuestionType
from .tree import MalformedTreeError, QuestionNode, _as_roots


@dataclass
class FlatQuestion:
    id: Any
    survey_id: Any
    text: str
    type: str
    options: list[str] = field(default_factory=list)
    order: int = 0
    parent_question_id: Any = None
    parent_branch_option: str = ""
    branch_end_policy: dict[str, str] = field(default_factory=dict)
    max_selections: int | None = None
    image_urls: list[str] = field(default_factory=list)


def flatten(
    tree: QuestionNode | Iterable[QuestionNode], survey_id: Any = None
) -> list[FlatQuestion]:
    """Depth-first pre-order listing of every node in the tree.

    Siblings keep their author order and a branch's follow-ups appear directly
    after the question that leads to them.
    """
    records: list[FlatQuestion] = []
    counter = itertools.count()

    def visit(node: QuestionNode, parent_id: Any, option: str) -> None:
        records.append(
            FlatQuestion(
                id=node.id,
                survey_id=survey_id,
                text=node.text,
                type=node.type,
                options=list(node.options),
                order=next(counter),
                parent_question_id=parent_id,
                parent_branch_option=option,
                branch_end_policy=dict(node.branch_end_policy),
                max_selections=node.max_selections,
                image_urls=list(node.image_urls),
            )
        )
        for child_option, kids in node.child_groups():
            for child in kids:
                visit(child, node.id, child_option)

    for root in _as_roots(tree):
        visit(root, None, "")
    return records


def hydrate(records: Iterable[Any]) -> list[QuestionNode]:
    """Rebuild the nested tree from flat records.

    ``records`` may be ``FlatQuestion`` objects or ``SurveyQuestion`` rows;
    both expose the same attribute names.
    """
    records = sorted(records, key=lambda r: r.order or 0)

    by_id: dict[Any, Any] = {}
    for record in records:
        if record.id in by_id:
            raise MalformedTreeError(f"Duplicate question id {record.id}.", record.id)
        by_id[record.id] = record

    roots = []
    children_of: dict[Any, list[Any]] = defaultdict(list)
    for record in records:
        parent_id = record.parent_question_id
        option = record.parent_branch_option or ""
        if parent_id is None:
            if option:
                raise MalformedTreeError(
                    "A root question cannot carry a branch option.", record.id
                )
            roots.append(record)
            continue
        if parent_id not in by_id:
            raise MalformedTreeError(
                f"Question {record.id} refers to missing parent {parent_id}.",
                record.id,
            )
        if not option:
            raise MalformedTreeError(
                f"Follow-up question {record.id} has no branch option.", record.id
            )
        children_of[parent_id].append(record)

    built: set[Any] = set()

    def build(record: Any, depth: int, ancestors: frozenset) -> QuestionNode:
        if record.id in ancestors:
            raise MalformedTreeError("Question tree contains a cycle.", record.id)
        built.add(record.id)
        node = QuestionNode(
            text=record.text or "",
            type=record.type,
            options=list(record.options or []),
            branch_end_policy=dict(record.branch_end_policy or {}),
            max_selections=record.max_selections,
            image_urls=list(record.image_urls or []),
            depth=depth,
            id=record.id,
        )
        for child in children_of.get(record.id, []):
            if node.type != QuestionType.BRANCHING_CHOICE:
                raise MalformedTreeError(
                    f"Question {record.id} is not a branching question but has follow-ups.",
                    child.id,
                )
            option = child.parent_branch_option
            if option not in node.options:
                raise MalformedTreeError(
                    f"Follow-up {child.id} hangs off unknown option '{option}'.",
                    child.id,
                )
            node.children.setdefault(option, []).append(
                build(child, depth + 1, ancestors | {record.id})
            )
        return node

    tree = [build(root, 0, frozenset()) for root in roots]
    unreached = [r.id for r in records if r.id not in built]
    if unreached:
        # Every parent exists, so anything unreached hangs off a loop
        raise MalformedTreeError("Question tree contains a cycle.", unreached[0])
    return tree
