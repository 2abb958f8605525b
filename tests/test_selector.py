"""Tests for the stage graph and job selection."""

from __future__ import annotations

import pytest

from restage.conditions import except_schedules, only_branches, only_schedules
from restage.errors import ConfigError
from restage.selector import RunMode, SkipReason, StageGraph, group_by_stage, plan, select
from restage.trigger import Trigger, TriggerKind

from helpers import make_job

STAGES = ["optional-builds", "check-compile", "post-build"]


@pytest.fixture
def graph() -> StageGraph:
    """A pipeline shaped like a typical game project's CI."""
    return StageGraph(
        stages=STAGES,
        jobs=[
            make_job("unittests", "post-build"),
            make_job(
                "optional:linux-debug",
                "optional-builds",
                condition=except_schedules(),
                run_mode=RunMode.MANUAL,
            ),
            make_job("check-voxygen", "check-compile"),
            make_job("benchmarktests", "post-build", run_mode=RunMode.ON_FAILURE_ALLOWED),
            make_job(
                "commit:linux-debug",
                "post-build",
                condition=except_schedules() & only_branches("master"),
            ),
            make_job("nightly:linux-optimized", "post-build", condition=only_schedules()),
            make_job("check-server-cli", "check-compile"),
        ],
    )


def _names(graph: StageGraph, trigger: Trigger) -> list[str]:
    return [j.name for j in select(graph, trigger)]


class TestStageGraph:
    """Tests for StageGraph validation."""

    def test_unknown_stage(self) -> None:
        with pytest.raises(ConfigError, match="unknown stage 'deploy'"):
            StageGraph(stages=["build"], jobs=[make_job("a", "deploy")])

    def test_duplicate_job(self) -> None:
        with pytest.raises(ConfigError, match="Duplicate job name 'a'"):
            StageGraph(stages=["test"], jobs=[make_job("a"), make_job("a")])

    def test_duplicate_stage(self) -> None:
        with pytest.raises(ConfigError, match="Duplicate stage"):
            StageGraph(stages=["test", "test"])

    def test_lookup(self, graph: StageGraph) -> None:
        assert graph.get("unittests").stage == "post-build"
        assert graph.stage_index("check-compile") == 1
        assert [j.name for j in graph.jobs_in_stage("check-compile")] == ["check-voxygen", "check-server-cli"]
        with pytest.raises(KeyError):
            graph.get("missing")


class TestSelect:
    """Tests for select()."""

    def test_push_on_master(self, graph: StageGraph) -> None:
        """Push to master: everything except nightly jobs, manual jobs included."""
        names = _names(graph, Trigger(kind=TriggerKind.PUSH, branch_ref="master"))
        assert names == [
            "optional:linux-debug",
            "check-voxygen",
            "check-server-cli",
            "unittests",
            "benchmarktests",
            "commit:linux-debug",
        ]

    def test_push_on_feature_branch(self, graph: StageGraph) -> None:
        """Branch-restricted jobs drop out on other branches."""
        names = _names(graph, Trigger(kind=TriggerKind.PUSH, branch_ref="feature-x"))
        assert "commit:linux-debug" not in names
        assert "nightly:linux-optimized" not in names
        assert "unittests" in names

    def test_scheduled(self, graph: StageGraph) -> None:
        """Scheduled runs never include schedule-excluding jobs and do include nightly ones."""
        names = _names(graph, Trigger(kind=TriggerKind.SCHEDULED, branch_ref="master"))
        assert names == [
            "check-voxygen",
            "check-server-cli",
            "unittests",
            "benchmarktests",
            "nightly:linux-optimized",
        ]

    @pytest.mark.parametrize("kind", [TriggerKind.PUSH, TriggerKind.MANUAL, TriggerKind.MERGE_PIPELINE])
    def test_nightly_only_on_schedules(self, graph: StageGraph, kind: TriggerKind) -> None:
        assert "nightly:linux-optimized" not in _names(graph, Trigger(kind=kind, branch_ref="master"))

    def test_scheduled_never_includes_excluding_jobs(self, graph: StageGraph) -> None:
        for branch in ("master", "feature-x", ""):
            selected = select(graph, Trigger(kind=TriggerKind.SCHEDULED, branch_ref=branch))
            assert all(not j.condition.excludes(TriggerKind.SCHEDULED) for j in selected)

    def test_order_is_stable_across_triggers(self, graph: StageGraph) -> None:
        """Jobs common to two runs keep the same relative order."""
        push = _names(graph, Trigger(kind=TriggerKind.PUSH, branch_ref="master"))
        nightly = _names(graph, Trigger(kind=TriggerKind.SCHEDULED, branch_ref="master"))
        common = [n for n in push if n in nightly]
        assert common == [n for n in nightly if n in push]

    def test_stage_order_then_declaration_order(self, graph: StageGraph) -> None:
        selected = select(graph, Trigger(kind=TriggerKind.PUSH, branch_ref="master"))
        indexes = [STAGES.index(j.stage) for j in selected]
        assert indexes == sorted(indexes)

    def test_empty_graph(self) -> None:
        assert select(StageGraph(stages=["test"]), Trigger(kind=TriggerKind.PUSH)) == []


class TestPlan:
    """Tests for plan() skip reasons."""

    def test_skip_reasons(self, graph: StageGraph) -> None:
        decisions = {s.job.name: s for s in plan(graph, Trigger(kind=TriggerKind.PUSH, branch_ref="feature-x"))}
        assert decisions["commit:linux-debug"].reason is SkipReason.BRANCH_MISMATCH
        assert decisions["nightly:linux-optimized"].reason is SkipReason.SCHEDULES_ONLY
        assert decisions["unittests"].selected
        assert decisions["unittests"].reason is None

        scheduled = {s.job.name: s for s in plan(graph, Trigger(kind=TriggerKind.SCHEDULED, branch_ref="master"))}
        assert scheduled["optional:linux-debug"].reason is SkipReason.EXCLUDES_SCHEDULES
        assert scheduled["commit:linux-debug"].reason is SkipReason.EXCLUDES_SCHEDULES

    def test_manual_awaits_activation(self, graph: StageGraph) -> None:
        decisions = {s.job.name: s for s in plan(graph, Trigger(kind=TriggerKind.PUSH, branch_ref="master"))}
        assert decisions["optional:linux-debug"].selected
        assert decisions["optional:linux-debug"].awaits_activation
        assert not decisions["unittests"].awaits_activation


def test_group_by_stage(graph: StageGraph) -> None:
    selected = select(graph, Trigger(kind=TriggerKind.PUSH, branch_ref="feature-x"))
    groups = group_by_stage(selected, STAGES)
    assert [stage for stage, _ in groups] == STAGES
    assert [j.name for j in groups[1][1]] == ["check-voxygen", "check-server-cli"]

    # Stage order inferred from the jobs when not given
    assert [stage for stage, _ in group_by_stage(selected)] == STAGES
    assert group_by_stage([], STAGES) == []
