"""
Tests for the BFS DAG builder.
"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from wikidag.common.config import BatchSettings, DagSettings
from wikidag.common.errors import ConfigurationError, TransientStorageError
from wikidag.common.types import BuildCheckpoint, CheckpointStatus
from wikidag.dag.builder import BFSDagBuilder, BuildState
from wikidag.database.connection import DatabaseManager
from wikidag.database.repository import (
    CheckpointRepository,
    CycleRepository,
    ErrorLogRepository,
    NodeRepository,
    ProgressRepository,
)

SMALL_BATCH = BatchSettings(initial=2, minimum=1, maximum=10, target_rows_per_sec=1.0)


def _settings(**overrides) -> DagSettings:
    values = {"max_level": 6, "batch": SMALL_BATCH}
    values.update(overrides)
    return DagSettings(**values)


async def _node_table(db):
    async with db.session() as session:
        return {
            n.page_id: (n.level, n.parent_id, n.root_id, n.kind)
            for n in await NodeRepository(session).get_all()
        }


class TestScenarios:
    """End-to-end hierarchy shapes."""

    @pytest.mark.asyncio
    async def test_scenario_a(self, db, scenario_a_source, fast_retry):
        builder = BFSDagBuilder(db, scenario_a_source, _settings(), fast_retry)
        result = await builder.build(seeds=[1])

        assert await _node_table(db) == {
            1: (0, None, 1, "branch"),
            2: (1, 1, 1, "leaf"),
            3: (1, 1, 1, "branch"),
            4: (2, 3, 1, "leaf"),
        }
        assert result.state == BuildState.DONE
        assert builder.state == BuildState.DONE
        assert result.nodes_added == 4
        assert result.checkpoint.status == CheckpointStatus.DONE

    @pytest.mark.asyncio
    async def test_seed_by_title(self, db, scenario_a_source, fast_retry):
        builder = BFSDagBuilder(db, scenario_a_source, _settings(), fast_retry)
        await builder.build(seeds=["A"])

        assert set(await _node_table(db)) == {1, 2, 3, 4}

    @pytest.mark.asyncio
    async def test_configured_seeds_used_by_default(self, db, scenario_a_source, fast_retry):
        builder = BFSDagBuilder(db, scenario_a_source, _settings(seeds=(1,)), fast_retry)
        result = await builder.build()

        assert result.nodes_added == 4

    @pytest.mark.asyncio
    async def test_max_level_bounds_depth(self, db, chain_source, fast_retry):
        builder = BFSDagBuilder(db, chain_source, _settings(), fast_retry)
        await builder.build(seeds=[1], max_level=3)

        table = await _node_table(db)
        assert set(table) == {1, 2, 3, 4, 101, 102, 103}
        assert max(level for level, _, _, _ in table.values()) == 3

    @pytest.mark.asyncio
    async def test_frontier_paging_narrower_than_level(self, db, make_source, fast_retry):
        pages = [(1, "Root", 14)] + [(10 + i, f"Sub_{i}", 14) for i in range(7)]
        pages += [(100 + i, f"Leaf_{i}", 0) for i in range(7)]
        memberships = [(10 + i, 1, "subcat") for i in range(7)]
        memberships += [(100 + i, 10 + i, "page") for i in range(7)]
        source = make_source(pages, memberships)

        builder = BFSDagBuilder(db, source, _settings(), fast_retry)
        result = await builder.build(seeds=[1], batch_size_hint=1)

        table = await _node_table(db)
        assert len(table) == 15
        assert all(table[100 + i][1] == 10 + i for i in range(7))
        assert result.levels[2].frontier_size == 7


class TestDiscoveryRules:
    """Single discovery, tie-breaks and filters."""

    @pytest.mark.asyncio
    async def test_first_discovery_keeps_shallowest_level(self, db, make_source, fast_retry):
        source = make_source(
            pages=[(1, "A", 14), (2, "B", 0), (3, "C", 14)],
            memberships=[(2, 1, "page"), (3, 1, "subcat"), (2, 3, "page")],
        )
        await BFSDagBuilder(db, source, _settings(), fast_retry).build(seeds=[1])

        assert (await _node_table(db))[2] == (1, 1, 1, "leaf")

    @pytest.mark.asyncio
    async def test_lowest_parent_wins_and_root_inherited(self, db, make_source, fast_retry):
        source = make_source(
            pages=[(10, "R1", 14), (11, "R2", 14), (20, "S1", 14), (30, "S2", 14), (40, "Both", 0), (50, "Only", 0)],
            memberships=[
                (20, 10, "subcat"),
                (30, 11, "subcat"),
                (40, 30, "page"),
                (40, 20, "page"),
                (50, 30, "page"),
            ],
        )
        await BFSDagBuilder(db, source, _settings(), fast_retry).build(seeds=[11, 10])

        table = await _node_table(db)
        assert table[40] == (2, 20, 10, "leaf")
        assert table[50] == (2, 30, 11, "leaf")

    @pytest.mark.asyncio
    async def test_overlapping_seeds_are_roots(self, db, scenario_a_source, fast_retry):
        await BFSDagBuilder(db, scenario_a_source, _settings(), fast_retry).build(seeds=[1, 3])

        table = await _node_table(db)
        assert table[3] == (0, None, 3, "branch")
        assert table[4] == (1, 3, 3, "leaf")
        assert table[2] == (1, 1, 1, "leaf")

    @pytest.mark.asyncio
    async def test_filters_files_namespaces_content_model_and_exclusions(self, db, make_source, fast_retry):
        source = make_source(
            pages=[
                (1, "Root", 14),
                (2, "Kept", 0),
                (3, "Picture.png", 6),
                (4, "User_page", 2),
                (5, "Style", 0, "css"),
                (6, "Hidden_categories", 14),
            ],
            memberships=[
                (2, 1, "page"),
                (3, 1, "file"),
                (4, 1, "page"),
                (5, 1, "page"),
                (6, 1, "subcat"),
            ],
        )
        builder = BFSDagBuilder(
            db, source, _settings(), fast_retry, exclude=lambda meta: meta.title.startswith("Hidden")
        )
        await builder.build(seeds=[1])

        assert set(await _node_table(db)) == {1, 2}

    @pytest.mark.asyncio
    async def test_content_model_filter_can_be_disabled(self, db, make_source, fast_retry):
        source = make_source(
            pages=[(1, "Root", 14), (5, "Style", 0, "css")],
            memberships=[(5, 1, "page")],
        )
        await BFSDagBuilder(db, source, _settings(content_model=None), fast_retry).build(seeds=[1])

        assert 5 in await _node_table(db)

    @pytest.mark.asyncio
    async def test_orphan_member_recorded_and_skipped(self, db, make_source, fast_retry):
        source = make_source(
            pages=[(1, "Root", 14), (2, "Kept", 0)],
            memberships=[(2, 1, "page"), (999, 1, "page")],
        )
        result = await BFSDagBuilder(db, source, _settings(), fast_retry).build(seeds=[1])

        assert result.state == BuildState.DONE
        assert set(await _node_table(db)) == {1, 2}
        async with db.session() as session:
            errors = await ErrorLogRepository(session).get_errors(phase="dag")
        assert [(e.error_type, e.key, e.unit) for e in errors] == [("DataIntegrityError", 999, "1")]


class TestIdempotenceAndCheckpoints:
    """Reruns, resumes and progress records."""

    @pytest.mark.asyncio
    async def test_rerun_inserts_nothing(self, db, scenario_a_source, fast_retry):
        builder = BFSDagBuilder(db, scenario_a_source, _settings(), fast_retry)
        await builder.build(seeds=[1])
        before = await _node_table(db)

        again = await builder.build(seeds=[1])
        fresh = await builder.build(seeds=[1], checkpoint=BuildCheckpoint.start("dag"))

        assert again.nodes_added == 0
        assert fresh.nodes_added == 0
        assert await _node_table(db) == before

    @pytest.mark.asyncio
    async def test_rerun_with_added_seed_materializes_its_tree(self, db, make_source, fast_retry):
        source = make_source(
            pages=[(1, "A", 14), (2, "B", 0), (3, "C", 14), (4, "D", 0), (10, "E", 14), (11, "F", 0)],
            memberships=[(2, 1, "page"), (3, 1, "subcat"), (4, 3, "page"), (11, 10, "page")],
        )
        builder = BFSDagBuilder(db, source, _settings(), fast_retry)
        await builder.build(seeds=[1])
        before = await _node_table(db)

        result = await builder.build(seeds=[1, 10])

        table = await _node_table(db)
        assert result.nodes_added == 2
        assert table[10] == (0, None, 10, "branch")
        assert table[11] == (1, 10, 10, "leaf")
        assert {k: v for k, v in table.items() if k in before} == before
        assert result.checkpoint.status == CheckpointStatus.DONE

        again = await builder.build(seeds=[1, 10])
        assert again.nodes_added == 0

    @pytest.mark.asyncio
    async def test_checkpoint_and_progress_per_level(self, db, scenario_a_source, fast_retry):
        result = await BFSDagBuilder(db, scenario_a_source, _settings(), fast_retry).build(seeds=[1])

        async with db.session() as session:
            stored = await CheckpointRepository(session).get("dag")
            progress = await ProgressRepository(session).get_by_phase("dag")
        assert stored == result.checkpoint
        assert stored.last_committed_unit == 3
        assert [p.unit for p in progress] == ["level_0", "level_1", "level_2", "level_3"]
        assert [p.rows_added for p in progress] == [1, 2, 1, 0]

    @pytest.mark.asyncio
    async def test_scenario_d_resume_after_failed_level(self, db, chain_source, fast_retry, tmp_path):
        original_insert = NodeRepository.insert_nodes

        async def failing_at_level_four(self, rows, chunk_size=10_000):
            if any(row["level"] == 4 for row in rows):
                raise OperationalError("INSERT INTO dag_nodes", {}, Exception("database is locked"))
            return await original_insert(self, rows, chunk_size)

        builder = BFSDagBuilder(db, chain_source, _settings(), fast_retry)
        with patch.object(NodeRepository, "insert_nodes", failing_at_level_four):
            with pytest.raises(TransientStorageError) as excinfo:
                await builder.build(seeds=[1])

        assert builder.state == BuildState.FAILED
        assert excinfo.value.unit == "4"
        partial = await _node_table(db)
        assert max(level for level, _, _, _ in partial.values()) == 3
        async with db.session() as session:
            checkpoint = await CheckpointRepository(session).get("dag")
            errors = await ErrorLogRepository(session).get_errors(error_type="TransientStorageError")
        assert checkpoint.last_committed_unit == 3
        assert checkpoint.status == CheckpointStatus.FAILED
        assert [e.unit for e in errors] == ["4"]

        resumed = await BFSDagBuilder(db, chain_source, _settings(), fast_retry).build(seeds=[1])
        assert resumed.levels[0].level == 4

        reference_db = DatabaseManager(database_url=f"sqlite+aiosqlite:///{tmp_path / 'reference.db'}")
        await reference_db.initialize()
        try:
            await BFSDagBuilder(reference_db, chain_source, _settings(), fast_retry).build(seeds=[1])
            assert await _node_table(db) == await _node_table(reference_db)
        finally:
            await reference_db.close()

    @pytest.mark.asyncio
    async def test_no_cycles_recorded_for_tree(self, db, scenario_a_source, fast_retry):
        result = await BFSDagBuilder(db, scenario_a_source, _settings(), fast_retry).build(seeds=[1])

        async with db.session() as session:
            assert await CycleRepository(session).get_all() == []
        assert result.cycles == []


class TestConfigurationErrors:
    """Invalid input fails before any write."""

    @pytest.mark.asyncio
    async def test_unresolved_seeds(self, db, scenario_a_source, fast_retry):
        builder = BFSDagBuilder(db, scenario_a_source, _settings(), fast_retry)
        with pytest.raises(ConfigurationError):
            await builder.build(seeds=[12345, "Missing"])

        assert await _node_table(db) == {}

    @pytest.mark.asyncio
    async def test_max_level_below_one(self, db, scenario_a_source, fast_retry):
        builder = BFSDagBuilder(db, scenario_a_source, _settings(), fast_retry)
        with pytest.raises(ConfigurationError):
            await builder.build(seeds=[1], max_level=0)

        assert await _node_table(db) == {}

    @pytest.mark.asyncio
    async def test_non_positive_batch_hint(self, db, scenario_a_source, fast_retry):
        builder = BFSDagBuilder(db, scenario_a_source, _settings(), fast_retry)
        with pytest.raises(ConfigurationError):
            await builder.build(seeds=[1], batch_size_hint=0)

    @pytest.mark.asyncio
    async def test_checkpoint_from_other_phase(self, db, scenario_a_source, fast_retry):
        builder = BFSDagBuilder(db, scenario_a_source, _settings(), fast_retry)
        with pytest.raises(ConfigurationError):
            await builder.build(seeds=[1], checkpoint=BuildCheckpoint.start("identity"))
