"""
Authoring-time question tree.

A survey is edited as a list of root ``QuestionNode`` objects. A
``branching_choice`` node owns, per option label, an ordered list of follow-up
nodes (``children``) and an optional end-of-branch policy
(``branch_end_policy``). The tree is persisted through
``branchsurvey_app.surveys.converter`` as flat ``SurveyQuestion`` rows.

Costs are charged per defined question, whether or not a given respondent
will ever see it: a question costs its base price at the top level and a flat
70% of it (rounded half-up) at any nesting depth.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Iterator
import uuid

from django.core.exceptions import ValidationError

from .models import BranchEndPolicy, QuestionType

BASE_COSTS = {
    QuestionType.BRANCHING_CHOICE: 15,
    QuestionType.IMAGE_CHOICE: 37,
}
DEFAULT_BASE_COST = 10
NESTED_COST_MULTIPLIER = Decimal("0.7")

MAX_BRANCH_OPTIONS = 5
MULTI_SELECT_DELIMITER = ", "

# Types whose ``options`` hold answer labels
OPTION_TYPES = {
    QuestionType.MULTIPLE_CHOICE,
    QuestionType.MULTIPLE_SELECT,
    QuestionType.RANKING,
    QuestionType.BRANCHING_CHOICE,
    QuestionType.CHOICE_WITH_OTHER,
    QuestionType.LIKERT_SCALE,
}
# Likert labels are optional captions, every other option type needs real labels
LABELLED_OPTION_TYPES = OPTION_TYPES - {QuestionType.LIKERT_SCALE}
SELECTION_LIMIT_TYPES = {QuestionType.MULTIPLE_SELECT, QuestionType.RANKING}
REQUIRED_IMAGE_COUNT = {
    QuestionType.IMAGE_CHOICE: 2,
    QuestionType.IMAGE_BANNER: 1,
}


class MalformedTreeError(ValidationError):
    """Raised when a question tree cannot be saved or rebuilt."""

    code = "MALFORMED_TREE"

    def __init__(self, message: str, node_id: Any = None):
        super().__init__(message, code=self.code)
        self.node_id = node_id


def new_local_id() -> str:
    return f"local-{uuid.uuid4().hex}"


def question_cost(question_type: str, depth: int = 0) -> int:
    base = BASE_COSTS.get(question_type, DEFAULT_BASE_COST)
    if depth <= 0:
        return base
    discounted = Decimal(base) * NESTED_COST_MULTIPLIER
    return int(discounted.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(eq=False)
class QuestionNode:
    text: str = ""
    type: str = QuestionType.MULTIPLE_CHOICE
    options: list[str] = field(default_factory=list)
    children: dict[str, list[QuestionNode]] = field(default_factory=dict)
    branch_end_policy: dict[str, str] = field(default_factory=dict)
    max_selections: int | None = None
    image_urls: list[str] = field(default_factory=list)
    depth: int = 0
    id: Any = field(default_factory=new_local_id)

    @property
    def cost(self) -> int:
        return question_cost(self.type, self.depth)

    @property
    def is_branching(self) -> bool:
        return self.type == QuestionType.BRANCHING_CHOICE

    def child_groups(self) -> Iterator[tuple[str, list[QuestionNode]]]:
        """Yield ``(option, children)`` in author option order."""
        for option in self.options:
            kids = self.children.get(option)
            if kids:
                yield option, kids

    def walk(self) -> Iterator[QuestionNode]:
        """Depth-first pre-order over this node and every descendant."""
        yield self
        for _, kids in self.child_groups():
            for child in kids:
                yield from child.walk()

    # -- option editing --------------------------------------------------

    def add_option(self, label: str = "") -> None:
        if self.is_branching and len(self.options) >= MAX_BRANCH_OPTIONS:
            raise ValueError(
                f"A branching question can have at most {MAX_BRANCH_OPTIONS} options."
            )
        if label and label in self.options:
            raise ValueError(f"Option '{label}' already exists.")
        self.options.append(label)

    def rename_option(self, old: str, new: str) -> None:
        """Rename an option, carrying its follow-ups and end policy along."""
        if old not in self.options:
            raise ValueError(f"Unknown option '{old}'.")
        if new == old:
            return
        if new in self.options:
            raise ValueError(f"Option '{new}' already exists.")

        self.options[self.options.index(old)] = new
        if old in self.children:
            self.children[new] = self.children.pop(old)
        if old in self.branch_end_policy:
            self.branch_end_policy[new] = self.branch_end_policy.pop(old)

    def remove_option(self, label: str) -> None:
        if label not in self.options:
            raise ValueError(f"Unknown option '{label}'.")
        self.options.remove(label)
        self.children.pop(label, None)
        self.branch_end_policy.pop(label, None)

    # -- branch editing --------------------------------------------------

    def add_child(self, option: str, child: QuestionNode) -> QuestionNode:
        if not self.is_branching:
            raise ValueError("Only branching_choice questions can have follow-ups.")
        if option not in self.options:
            raise ValueError(f"Unknown option '{option}'.")
        _set_depth(child, self.depth + 1)
        self.children.setdefault(option, []).append(child)
        return child

    def remove_child(self, option: str, index: int) -> QuestionNode:
        kids = self.children.get(option) or []
        if not 0 <= index < len(kids):
            raise IndexError(f"No follow-up {index} under option '{option}'.")
        removed = kids.pop(index)
        if not kids:
            del self.children[option]
        return removed

    def set_branch_end_policy(self, option: str, policy: str) -> None:
        if option not in self.options:
            raise ValueError(f"Unknown option '{option}'.")
        if policy not in BranchEndPolicy.values:
            raise ValueError(f"Unknown branch end policy '{policy}'.")
        self.branch_end_policy[option] = policy

    def change_type(self, new_type: str) -> None:
        if new_type not in QuestionType.values:
            raise ValueError(f"Unknown question type '{new_type}'.")
        self.type = new_type
        if new_type != QuestionType.BRANCHING_CHOICE:
            self.children = {}
            self.branch_end_policy = {}
        if new_type not in OPTION_TYPES:
            self.options = []
        if new_type not in SELECTION_LIMIT_TYPES:
            self.max_selections = None
        if new_type not in REQUIRED_IMAGE_COUNT:
            self.image_urls = []


def _set_depth(node: QuestionNode, depth: int) -> None:
    node.depth = depth
    for kids in node.children.values():
        for child in kids:
            _set_depth(child, depth + 1)


def _as_roots(tree: QuestionNode | Iterable[QuestionNode]) -> list[QuestionNode]:
    if isinstance(tree, QuestionNode):
        return [tree]
    return list(tree)


def total_cost(tree: QuestionNode | Iterable[QuestionNode]) -> int:
    """Sum of every defined question's cost, across all branches."""
    total = 0
    for node in _as_roots(tree):
        total += node.cost
        for kids in node.children.values():
            total += total_cost(kids)
    return total


def validate_tree(tree: QuestionNode | Iterable[QuestionNode]) -> None:
    """Check the structural rules a tree must satisfy before it is saved."""
    seen: set[int] = set()
    for root in _as_roots(tree):
        if root.depth != 0:
            raise MalformedTreeError("Root questions must sit at depth 0.", root.id)
        _validate_node(root, seen)


def _validate_node(node: QuestionNode, seen: set[int]) -> None:
    if id(node) in seen:
        raise MalformedTreeError(
            "A question appears more than once in the tree.", node.id
        )
    seen.add(id(node))

    if node.type not in QuestionType.values:
        raise MalformedTreeError(f"Unknown question type '{node.type}'.", node.id)

    if node.type in LABELLED_OPTION_TYPES:
        if len(node.options) < 2:
            raise MalformedTreeError(
                "Choice questions need at least two options.", node.id
            )
        if any(not isinstance(o, str) or not o.strip() for o in node.options):
            raise MalformedTreeError("Options cannot be blank.", node.id)
    if len(set(node.options)) != len(node.options):
        raise MalformedTreeError("Option labels must be unique.", node.id)
    if node.is_branching and len(node.options) > MAX_BRANCH_OPTIONS:
        raise MalformedTreeError(
            f"A branching question can have at most {MAX_BRANCH_OPTIONS} options.",
            node.id,
        )
    if node.type == QuestionType.MULTIPLE_SELECT and any(
        MULTI_SELECT_DELIMITER in o for o in node.options
    ):
        raise MalformedTreeError(
            f"Multiple select labels cannot contain '{MULTI_SELECT_DELIMITER}'.",
            node.id,
        )

    if node.max_selections is not None:
        if node.type not in SELECTION_LIMIT_TYPES:
            raise MalformedTreeError(
                "Only multiple select and ranking questions take a selection limit.",
                node.id,
            )
        if not 2 <= node.max_selections <= len(node.options):
            raise MalformedTreeError(
                "Selection limit must be between 2 and the number of options.",
                node.id,
            )

    required_images = REQUIRED_IMAGE_COUNT.get(node.type)
    if required_images is not None and len(node.image_urls) != required_images:
        raise MalformedTreeError(
            f"'{node.type}' questions need exactly {required_images} image(s).",
            node.id,
        )

    if not node.is_branching and (node.children or node.branch_end_policy):
        raise MalformedTreeError(
            "Only branching_choice questions can have follow-ups.", node.id
        )
    for option in node.children:
        if option not in node.options:
            raise MalformedTreeError(
                f"Follow-ups are attached to unknown option '{option}'.", node.id
            )
    for option, policy in node.branch_end_policy.items():
        if option not in node.options:
            raise MalformedTreeError(
                f"End policy is set for unknown option '{option}'.", node.id
            )
        if policy not in BranchEndPolicy.values:
            raise MalformedTreeError(
                f"Unknown branch end policy '{policy}'.", node.id
            )

    for kids in node.children.values():
        for child in kids:
            if child.depth != node.depth + 1:
                raise MalformedTreeError(
                    "Follow-up depth does not match its parent.", child.id
                )
            _validate_node(child, seen)


def node_to_dict(node: QuestionNode) -> dict[str, Any]:
    return {
        "id": node.id,
        "text": node.text,
        "type": node.type,
        "options": list(node.options),
        "children": {
            option: [node_to_dict(child) for child in kids]
            for option, kids in node.child_groups()
        },
        "branch_end_policy": dict(node.branch_end_policy),
        "max_selections": node.max_selections,
        "image_urls": list(node.image_urls),
        "cost": node.cost,
        "total_cost": total_cost(node),
    }


def node_from_dict(data: Any, depth: int = 0) -> QuestionNode:
    """Build a node (and its subtree) from the nested JSON form."""
    if not isinstance(data, dict):
        raise MalformedTreeError("Each question must be a JSON object.")

    children_data = data.get("children") or {}
    options = data.get("options") or []
    policy = data.get("branch_end_policy") or {}
    image_urls = data.get("image_urls") or []
    if not isinstance(children_data, dict):
        raise MalformedTreeError("'children' must map option labels to lists.")
    if not isinstance(options, list) or not isinstance(image_urls, list):
        raise MalformedTreeError("'options' and 'image_urls' must be lists.")
    if not isinstance(policy, dict):
        raise MalformedTreeError("'branch_end_policy' must be an object.")

    max_selections = data.get("max_selections")
    if max_selections is not None:
        try:
            max_selections = int(max_selections)
        except (TypeError, ValueError):
            raise MalformedTreeError("'max_selections' must be an integer.")

    node = QuestionNode(
        text=str(data.get("text") or ""),
        type=data.get("type") or QuestionType.MULTIPLE_CHOICE,
        options=[str(o) for o in options],
        branch_end_policy={str(k): v for k, v in policy.items()},
        max_selections=max_selections,
        image_urls=[str(u) for u in image_urls],
        depth=depth,
    )
    if data.get("id") is not None:
        node.id = data["id"]

    for option, kids in children_data.items():
        if not isinstance(kids, list):
            raise MalformedTreeError(
                f"Follow-ups for option '{option}' must be a list.", node.id
            )
        node.children[str(option)] = [
            node_from_dict(child, depth=depth + 1) for child in kids
        ]
    return node
