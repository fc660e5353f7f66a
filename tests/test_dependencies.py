"""Tests for dependency resolution."""

import pytest

from agentboard.core import dependencies as deps_mod
from agentboard.core.dependencies import DependencyCycleError
from agentboard.db.models import Task, TaskStatus


def _task(task_id, deps=(), status=TaskStatus.TODO):
    return Task(id=task_id, workspace="demo", title=f"Task {task_id}", status=status, dependencies=list(deps))


class TestReadiness:
    def test_no_dependencies_is_ready(self):
        t = _task(1)
        assert deps_mod.is_ready(t, [t])
        assert not deps_mod.is_blocked(t, [t])

    def test_linear_chain(self):
        a, b, c = _task(1), _task(2, [1]), _task(3, [2])
        board = [a, b, c]
        assert [t.id for t in deps_mod.get_ready_tasks(board)] == [1]

        a.status = TaskStatus.DONE
        assert [t.id for t in deps_mod.get_ready_tasks(board)] == [2]

        b.status = TaskStatus.DONE
        assert [t.id for t in deps_mod.get_ready_tasks(board)] == [3]

    def test_all_dependencies_must_be_done(self):
        board = [_task(1, status=TaskStatus.DONE), _task(2, status=TaskStatus.IN_PROGRESS), _task(3, [1, 2])]
        assert not deps_mod.is_ready(board[2], board)
        assert deps_mod.blocking_dependencies(board[2], board) == [2]

    def test_dangling_dependency_blocks_forever(self):
        t = _task(1, [99])
        assert deps_mod.is_blocked(t, [t])
        assert deps_mod.blocking_dependencies(t, [t]) == [99]

    def test_duplicate_dependency_ids_count_once(self):
        board = [_task(1, status=TaskStatus.DONE), _task(2, [1, 1])]
        assert deps_mod.is_ready(board[1], board)

    def test_self_dependency_is_blocked(self):
        t = _task(1, [1])
        assert deps_mod.is_blocked(t, [t])

    def test_cycle_members_are_blocked_even_if_done(self):
        board = [_task(1, [2], status=TaskStatus.DONE), _task(2, [1], status=TaskStatus.DONE), _task(3)]
        assert deps_mod.is_blocked(board[0], board)
        assert deps_mod.is_blocked(board[1], board)
        assert deps_mod.is_ready(board[2], board)

    def test_done_tasks_are_not_listed_as_ready(self):
        board = [_task(1, status=TaskStatus.DONE), _task(2)]
        assert [t.id for t in deps_mod.get_ready_tasks(board)] == [2]

    def test_stats(self):
        board = [_task(1, status=TaskStatus.DONE), _task(2, [1]), _task(3, [2]), _task(4, [42])]
        stats = deps_mod.dependency_stats(board)
        assert stats.total == 4
        assert stats.ready == 2
        assert stats.blocked == 2
        assert stats.with_dependencies == 3


class TestCycles:
    def test_find_cycle(self):
        assert deps_mod.find_cycle({1: [2], 2: [3], 3: [1]}) == [1, 2, 3, 1]

    def test_find_cycle_none(self):
        assert deps_mod.find_cycle({1: [], 2: [1], 3: [1, 2]}) is None

    def test_find_cycle_ignores_unknown_nodes(self):
        assert deps_mod.find_cycle({1: [99]}) is None

    def test_cyclic_task_ids_overlapping_cycles(self):
        board = [_task(1, [2]), _task(2, [1, 3]), _task(3, [2]), _task(4, [1])]
        assert deps_mod.cyclic_task_ids(board) == {1, 2, 3}

    def test_check_acyclic_rejects_cycle(self):
        board = [_task(1), _task(2, [1])]
        with pytest.raises(DependencyCycleError) as exc:
            deps_mod.check_acyclic(board, 1, [2])
        assert exc.value.cycle == [1, 2, 1]
        assert isinstance(exc.value, ValueError)

    def test_check_acyclic_rejects_self_dependency(self):
        with pytest.raises(DependencyCycleError):
            deps_mod.check_acyclic([_task(1)], 1, [1])

    def test_check_acyclic_allows_dag(self):
        board = [_task(1), _task(2, [1])]
        deps_mod.check_acyclic(board, 3, [1, 2])
