import pytest

from branchsurvey_app.surveys.models import BranchEndPolicy, QuestionType
from branchsurvey_app.surveys.tree import (
    MalformedTreeError,
    QuestionNode,
    node_from_dict,
    node_to_dict,
    question_cost,
    total_cost,
    validate_tree,
)


def branching(text="Pick", options=("A", "B")):
    return QuestionNode(
        text=text, type=QuestionType.BRANCHING_CHOICE, options=list(options)
    )


def choice(text="Q", options=("Yes", "No")):
    return QuestionNode(text=text, type=QuestionType.MULTIPLE_CHOICE, options=list(options))


@pytest.mark.parametrize(
    "question_type,depth,expected",
    [
        (QuestionType.MULTIPLE_CHOICE, 0, 10),
        (QuestionType.BRANCHING_CHOICE, 0, 15),
        (QuestionType.IMAGE_CHOICE, 0, 37),
        (QuestionType.SHORT_ANSWER, 0, 10),
        (QuestionType.MULTIPLE_CHOICE, 1, 7),
        (QuestionType.BRANCHING_CHOICE, 1, 11),
        (QuestionType.IMAGE_CHOICE, 1, 26),
        (QuestionType.IMAGE_CHOICE, 4, 26),
    ],
)
def test_question_cost(question_type, depth, expected):
    assert question_cost(question_type, depth) == expected


def test_total_cost_counts_every_branch():
    root = branching()
    root.add_child("A", choice("A1"))
    nested = root.add_child("B", branching("B1", ("x", "y")))
    nested.add_child("x", choice("deep"))
    tail = choice("Tail")

    # 15 + 7 + 11 + 7 + 10
    assert total_cost([root, tail]) == 50
    assert nested.depth == 1
    assert nested.children["x"][0].depth == 2


def test_add_child_sets_depth_for_whole_subtree():
    sub = branching("sub", ("p", "q"))
    sub.add_child("p", choice("leaf"))
    root = branching()
    root.add_child("A", sub)
    assert sub.depth == 1
    assert sub.children["p"][0].depth == 2


def test_add_child_rejects_non_branching_parent_and_unknown_option():
    with pytest.raises(ValueError):
        choice().add_child("Yes", choice())
    with pytest.raises(ValueError):
        branching().add_child("Z", choice())


def test_branching_option_limit():
    root = branching(options=("1", "2", "3", "4", "5"))
    with pytest.raises(ValueError):
        root.add_option("6")


def test_rename_option_carries_children_and_policy():
    root = branching()
    root.add_child("A", choice())
    root.set_branch_end_policy("A", BranchEndPolicy.END_SURVEY)
    before = total_cost(root)

    root.rename_option("A", "Alpha")

    assert root.options == ["Alpha", "B"]
    assert "A" not in root.children and len(root.children["Alpha"]) == 1
    assert root.branch_end_policy == {"Alpha": BranchEndPolicy.END_SURVEY}
    assert total_cost(root) == before == 22


def test_remove_option_drops_its_branch():
    root = branching(options=("A", "B", "C"))
    root.add_child("B", choice())
    root.set_branch_end_policy("B", BranchEndPolicy.CONTINUE)
    root.remove_option("B")
    assert root.children == {}
    assert root.branch_end_policy == {}


def test_change_type_clears_branches():
    root = branching()
    root.add_child("A", choice())
    root.change_type(QuestionType.SHORT_ANSWER)
    assert root.children == {} and root.options == []


def test_validate_tree_accepts_well_formed_tree():
    root = branching()
    root.add_child("A", choice())
    validate_tree([root, QuestionNode(text="Say", type=QuestionType.SHORT_ANSWER)])


@pytest.mark.parametrize(
    "node",
    [
        QuestionNode(type="essay"),
        QuestionNode(type=QuestionType.MULTIPLE_CHOICE, options=["only"]),
        QuestionNode(type=QuestionType.MULTIPLE_CHOICE, options=["a", " "]),
        QuestionNode(type=QuestionType.MULTIPLE_CHOICE, options=["a", "a"]),
        QuestionNode(type=QuestionType.MULTIPLE_SELECT, options=["a, b", "c"]),
        QuestionNode(
            type=QuestionType.MULTIPLE_SELECT, options=["a", "b"], max_selections=3
        ),
        QuestionNode(type=QuestionType.IMAGE_CHOICE, image_urls=["one.png"]),
        QuestionNode(
            type=QuestionType.BRANCHING_CHOICE,
            options=["a", "b", "c", "d", "e", "f"],
        ),
        QuestionNode(
            type=QuestionType.BRANCHING_CHOICE,
            options=["a", "b"],
            branch_end_policy={"z": BranchEndPolicy.END_SURVEY},
        ),
    ],
)
def test_validate_tree_rejects(node):
    with pytest.raises(MalformedTreeError) as exc:
        validate_tree([node])
    assert exc.value.code == "MALFORMED_TREE"


def test_validate_tree_rejects_shared_node():
    shared = choice()
    root = branching()
    root.add_child("A", shared)
    root.children["B"] = [shared]
    with pytest.raises(MalformedTreeError):
        validate_tree(root)


def test_dict_form_round_trips_structure():
    data = {
        "text": "Pick",
        "type": "branching_choice",
        "options": ["A", "B"],
        "branch_end_policy": {"B": "end_survey"},
        "children": {
            "A": [{"text": "Why?", "type": "short_answer"}],
        },
    }
    node = node_from_dict(data)
    assert node.children["A"][0].depth == 1

    out = node_to_dict(node)
    assert out["children"]["A"][0]["text"] == "Why?"
    assert out["branch_end_policy"] == {"B": "end_survey"}
    assert out["cost"] == 15
    assert out["total_cost"] == 22


def test_node_from_dict_rejects_bad_shapes():
    with pytest.raises(MalformedTreeError):
        node_from_dict(["not", "a", "dict"])
    with pytest.raises(MalformedTreeError):
        node_from_dict({"type": "branching_choice", "children": {"A": "nope"}})
