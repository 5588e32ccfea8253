"""Tests for task graph building."""

import logging

import pytest
from specflow.config import Config, PlanningConfig
from specflow.errors import AmbiguousDependency, CyclicDependency
from specflow.extractor import extract
from specflow.models import Category, Requirement
from specflow.planner import build, estimate_points, group_by_section
from specflow.workflow import plan_document


def _graph(text, config=None, **kwargs):
    return build(extract(text, config), config, **kwargs)


# --- Grouping ---

def test_one_task_per_requirement(simple_doc):
    """Independent requirements → independent tasks in document order."""
    graph = _graph(simple_doc)
    assert graph.order == ("task-1", "task-2", "task-3")
    assert [t.requirement_ids for t in graph.tasks] == [("R1",), ("R2",), ("R3",)]
    assert all(t.depends_on == frozenset() for t in graph.tasks)
    assert graph.tasks[0].title == "Users can create a todo item"


def test_edge_case_joins_referenced_requirement(full_doc):
    """Edge cases and acceptance criteria attach to the requirement they reference."""
    graph = _graph(full_doc)
    by_reqs = {t.requirement_ids: t for t in graph.tasks}
    assert ("R2", "E1") in by_reqs
    assert ("R3", "A1") in by_reqs
    assert len(graph.tasks) == 3


def test_unattached_edge_case_gets_own_task():
    """An edge case without references becomes its own task."""
    doc = """\
## Requirements
- Users can upload files.

## Edge Cases
- Uploads above the size limit fail.
"""
    graph = _graph(doc)
    assert [t.requirement_ids for t in graph.tasks] == [("R1",), ("R2",)]


def test_group_by_section():
    """Section grouping makes one task per heading."""
    doc = """\
## Requirements
- Users can sign up.
- Users can log in.

## Non-functional Requirements
- Pages load fast.
"""
    config = Config(planning=PlanningConfig(grouping="section"))
    graph = _graph(doc, config)
    assert [t.requirement_ids for t in graph.tasks] == [("R1", "R2"), ("R3",)]


def test_custom_grouping_callable(simple_doc):
    """A caller-supplied strategy replaces the configured one."""
    graph = _graph(simple_doc, grouping=lambda reqs: [list(reqs)])
    assert len(graph.tasks) == 1
    assert graph.tasks[0].requirement_ids == ("R1", "R2", "R3")


def test_unknown_grouping_name(simple_doc):
    """An unknown strategy name is a configuration error."""
    config = Config(planning=PlanningConfig(grouping="by-mood"))
    with pytest.raises(ValueError, match="by-mood"):
        _graph(simple_doc, config)


def test_group_by_section_keeps_first_appearance():
    """Sections are grouped in order of first appearance."""
    reqs = list(extract("## Requirements\n- A thing.\n\n## Edge Cases\n- An edge.\n"))
    assert [[r.id for r in g] for g in group_by_section(reqs)] == [["R1"], ["R2"]]


# --- Edges ---

def test_reference_edges(chain_doc):
    """[ID] references become dependency edges."""
    graph = _graph(chain_doc)
    assert graph.get("task-2").depends_on == frozenset({"task-1"})
    assert graph.get("task-3").depends_on == frozenset({"task-2"})
    assert graph.order == ("task-1", "task-2", "task-3")


def test_artifact_edges(full_doc):
    """A task that uses an artifact depends on the task that provides it."""
    graph = _graph(full_doc)
    schema_task = next(t for t in graph.tasks if t.requirement_ids == ("R1",))
    register = next(t for t in graph.tasks if "R2" in t.requirement_ids)
    assert schema_task.id in register.depends_on


def test_stage_edges_order_setup_first():
    """Setup work runs before core and polish, whatever the document order."""
    doc = """\
## Requirements
### Polish
- Write the user guide.
### Setup
- Scaffold the project.
### Core
- Users can sign up.
"""
    graph = _graph(doc)
    guide, scaffold, signup = graph.tasks
    assert guide.stage == "polish"
    assert scaffold.depends_on == frozenset()
    assert signup.depends_on == frozenset({scaffold.id})
    assert guide.depends_on == frozenset({signup.id})
    assert graph.order == (scaffold.id, signup.id, guide.id)


def test_unknown_reference_is_ambiguous():
    """A reference to an id that does not exist is rejected."""
    doc = "## Requirements\n- [A] Extend the module from [Z].\n"
    with pytest.raises(AmbiguousDependency) as exc:
        _graph(doc)
    assert exc.value.source == "A"
    assert exc.value.reference == "Z"


def test_multiple_providers_are_ambiguous():
    """An artifact provided by two tasks cannot be resolved."""
    doc = """\
## Requirements
- [A] Build the importer; provides `parser`.
- [B] Build the exporter; provides `parser`.
- [C] Build the CLI; uses `parser`.
"""
    with pytest.raises(AmbiguousDependency) as exc:
        _graph(doc)
    assert exc.value.candidates == ["task-1", "task-2"]


def test_cycle_detected(cycle_doc):
    """Mutual references raise CyclicDependency naming the tasks."""
    with pytest.raises(CyclicDependency) as exc:
        _graph(cycle_doc)
    assert {"task-1", "task-2"} <= set(exc.value.cycle)


def test_reference_against_stage_order_is_a_cycle():
    """Edges are never dropped to make a cycle go away."""
    doc = """\
## Requirements
### Setup
- [S1] Seed data from the output of [C1].
### Core
- [C1] Users can sign up.
"""
    with pytest.raises(CyclicDependency):
        _graph(doc)


def test_stable_order_for_independent_tasks():
    """Independent tasks keep document order around dependent ones."""
    doc = """\
## Requirements
- [A] Alpha feature.
- [B] Beta feature built on [C].
- [C] Gamma feature.
"""
    assert _graph(doc).order == ("task-1", "task-3", "task-2")


# --- Flags ---

def test_input_and_idempotent_tags():
    """@input and @idempotent tags set task flags."""
    doc = """\
## Requirements
- Accept uploaded files. @input
- Import the nightly feed. @idempotent
"""
    upload, feed = _graph(doc).tasks
    assert upload.handles_external_input is True
    assert upload.idempotent is False
    assert feed.idempotent is True
    assert upload.title == "Accept uploaded files"


def test_non_goals_carried(full_doc):
    """Non-goals passed in are kept on the graph."""
    doc = extract(full_doc).document()
    graph = build(doc.requirements, non_goals=doc.non_goals)
    assert graph.non_goals == ("Single sign-on.",)
    assert len(graph.requirements) == 5


# --- Sizing ---

def test_estimate_points():
    """One point per words_per_point words, at least one."""
    assert estimate_points("", 25) == 1
    assert estimate_points("word " * 25, 25) == 1
    assert estimate_points("word " * 26, 25) == 2


def test_oversized_task_split_into_chain():
    """Tasks above max_estimate become chained parts; dependents wait on the last."""
    doc = """\
## Requirements
- [R1] Alpha beta gamma delta. Epsilon zeta eta theta. Iota kappa lambda mu.
- [R2] Use the result of [R1].
"""
    config = Config(planning=PlanningConfig(max_estimate=1, words_per_point=5))
    graph = _graph(doc, config)
    assert graph.order == ("task-1.1", "task-1.2", "task-1.3", "task-2")
    parts = [graph.get(f"task-1.{i}") for i in (1, 2, 3)]
    assert parts[0].depends_on == frozenset()
    assert parts[1].depends_on == frozenset({"task-1.1"})
    assert parts[2].depends_on == frozenset({"task-1.2"})
    assert all(p.parent_id == "task-1" for p in parts)
    assert all(p.estimate <= 1 for p in parts)
    assert parts[0].title.endswith("(part 1 of 3)")
    assert graph.get("task-2").depends_on == frozenset({"task-1.3"})


def test_empty_requirements():
    """No requirements → empty graph."""
    graph = build([])
    assert graph.tasks == ()
    assert graph.order == ()


def test_empty_text_gets_placeholder_title():
    """A requirement without text still yields a titled task."""
    req = Requirement(id="R1", text="", category=Category.FUNCTIONAL, source_offset=0)
    assert build([req]).tasks[0].title == "Untitled task"


def test_subscripts_do_not_create_edges():
    """Technical bracket text plans without dependency errors."""
    run = plan_document("## Requirements\n- Return values[i] for each index i.\n")
    assert run.tasks[0].depends_on == frozenset()


def test_build_logs_graph_size(simple_doc, caplog):
    """Building logs the task and edge counts."""
    with caplog.at_level(logging.INFO, logger="specflow.planner"):
        _graph(simple_doc)
    assert "Built task graph: 3 tasks, 0 edges" in caplog.text
