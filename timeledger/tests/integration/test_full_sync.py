from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from timeledger.domain.models import Issue, Project, ProjectMember, SyncLog, TimeEntry, User
from timeledger.persistence.repos import synced as synced_repo
from timeledger.services.sync.orchestrator import SyncOrchestrator


def _seed_tracker(fake_redmine) -> None:
    fake_redmine.add_user(1, "Ada", "Lovelace")
    fake_redmine.add_user(2, "Alan", "Turing")
    fake_redmine.add_user(3, "Grace", "Hopper", status=3)
    fake_redmine.add_project(10, "Apollo")
    fake_redmine.add_project(11, "Apollo Guidance", parent_id=10)
    fake_redmine.add_issue(100, 10, assignee_id=1, estimated_hours=10.0)
    fake_redmine.add_issue(101, 11, status="Closed", assignee_id=2)
    fake_redmine.add_time_entry(1000, user_id=1, project_id=10, issue_id=100, hours=7.5, spent_on="2026-10-05")
    fake_redmine.add_time_entry(1001, user_id=2, project_id=11, issue_id=101, hours=2.0, spent_on="2026-10-06")
    fake_redmine.add_time_entry(1002, user_id=1, project_id=11, hours=0.25, spent_on="2026-10-06")


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_full_sync_mirrors_every_entity(orchestrator, fake_redmine, session_factory) -> None:
    _seed_tracker(fake_redmine)

    run = await orchestrator.run_full_sync()

    assert run.status == "success"
    assert {entity: result.synced for entity, result in run.results.items()} == {
        "users": 3,
        "projects": 2,
        "issues": 2,
        "time_entries": 3,
    }
    async with session_factory() as session:
        users = {row.external_id: row for row in (await session.execute(select(User))).scalars()}
        assert users[1].display_name == "Ada Lovelace"
        assert users[1].role == "user"
        assert users[3].status == "locked"
        projects = {row.external_id: row for row in (await session.execute(select(Project))).scalars()}
        assert projects[11].parent_id == projects[10].id
        issue = (await session.execute(select(Issue).where(Issue.external_id == 100))).scalar_one()
        assert issue.assignee_id == users[1].id
        assert issue.estimated_hours == Decimal("10.00")
        entry = (await session.execute(select(TimeEntry).where(TimeEntry.external_id == 1002))).scalar_one()
        assert entry.issue_id is None
        assert entry.hours == Decimal("0.25")
    times = await orchestrator.get_last_sync_times()
    assert all(times[entity] is not None for entity in ("users", "projects", "issues", "time_entries"))
    # Four stage logs plus the pass summary.
    assert await _count(session_factory, SyncLog) == 5


@pytest.mark.asyncio
async def test_second_full_sync_changes_nothing(orchestrator, fake_redmine, session_factory) -> None:
    _seed_tracker(fake_redmine)
    await orchestrator.run_full_sync()

    rerun = await orchestrator.run_full_sync()

    for result in rerun.results.values():
        assert result.created == 0
        assert result.updated == 0
        assert result.deleted == 0
        assert result.unchanged == result.synced
    assert await _count(session_factory, User) == 3
    assert await _count(session_factory, TimeEntry) == 3


@pytest.mark.asyncio
async def test_remote_change_updates_row(orchestrator, fake_redmine, session_factory) -> None:
    _seed_tracker(fake_redmine)
    await orchestrator.run_full_sync()
    fake_redmine.issues[100]["status"] = {"id": 5, "name": "Resolved"}
    fake_redmine.issues[100]["updated_on"] = "2026-10-12T08:00:00Z"

    result = await orchestrator.run_entity_sync("issues", "full")

    assert result.updated == 1
    assert result.unchanged == 1
    async with session_factory() as session:
        issue = (await session.execute(select(Issue).where(Issue.external_id == 100))).scalar_one()
        assert issue.status == "Resolved"


@pytest.mark.asyncio
async def test_removed_users_are_locked_or_deleted(orchestrator, fake_redmine, session_factory) -> None:
    fake_redmine.add_user(1, "Ada", "Lovelace")
    fake_redmine.add_user(2, "Alan", "Turing")
    fake_redmine.add_user(3, "Grace", "Hopper")
    fake_redmine.add_project(10, "Apollo")
    fake_redmine.add_time_entry(1000, user_id=1, project_id=10, hours=4.0, spent_on="2026-10-05")
    await orchestrator.run_full_sync()
    del fake_redmine.users[1]
    del fake_redmine.users[2]

    result = await orchestrator.run_entity_sync("users", "full")

    assert result.deactivated == 1
    assert result.deleted == 1
    async with session_factory() as session:
        users = {row.external_id: row for row in (await session.execute(select(User))).scalars()}
    assert set(users) == {1, 3}
    assert users[1].status == "locked"


@pytest.mark.asyncio
async def test_failed_user_detail_keeps_local_row(orchestrator, fake_redmine, session_factory) -> None:
    fake_redmine.add_user(1, "Ada", "Lovelace")
    fake_redmine.add_user(2, "Alan", "Turing")
    await orchestrator.run_entity_sync("users", "full")
    fake_redmine.users[2]["lastname"] = "Renamed"
    fake_redmine.fail("/users/2.json", 500, 500)

    result = await orchestrator.run_entity_sync("users", "full")

    assert result.synced == 1
    assert result.errors == 1
    assert result.status == "partial"
    assert result.deleted == 0
    assert result.deactivated == 0
    async with session_factory() as session:
        alan = (await session.execute(select(User).where(User.external_id == 2))).scalar_one()
    assert alan.display_name == "Alan Turing"
    assert alan.status == "active"


@pytest.mark.asyncio
async def test_removed_project_takes_its_issues_and_entries(orchestrator, fake_redmine, session_factory) -> None:
    _seed_tracker(fake_redmine)
    await orchestrator.run_full_sync()
    del fake_redmine.projects[11]

    result = await orchestrator.run_entity_sync("projects", "full")

    assert result.deleted == 1
    assert await _count(session_factory, Project) == 1
    assert await _count(session_factory, Issue) == 1
    # Both the issue-bound and the issue-less entry of the removed project are gone.
    async with session_factory() as session:
        remaining = (await session.execute(select(TimeEntry.external_id))).scalars().all()
    assert remaining == [1000]


@pytest.mark.asyncio
async def test_incomplete_fetch_never_deletes(orchestrator, fake_redmine, session_factory) -> None:
    _seed_tracker(fake_redmine)
    await orchestrator.run_full_sync()
    del fake_redmine.projects[11]
    fake_redmine.fail("/projects.json", 500, 500)

    result = await orchestrator.run_entity_sync("projects", "full")

    assert result.complete is False
    assert result.deleted == 0
    assert await _count(session_factory, Project) == 2


@pytest.mark.asyncio
async def test_empty_listing_never_wipes_local_rows(orchestrator, fake_redmine, session_factory) -> None:
    _seed_tracker(fake_redmine)
    await orchestrator.run_full_sync()
    fake_redmine.time_entries.clear()

    result = await orchestrator.run_entity_sync("time_entries", "full")

    assert result.deleted == 0
    assert await _count(session_factory, TimeEntry) == 3


@pytest.mark.asyncio
async def test_entry_with_unknown_issue_is_skipped(orchestrator, fake_redmine, session_factory) -> None:
    _seed_tracker(fake_redmine)
    fake_redmine.add_time_entry(1003, user_id=1, project_id=10, issue_id=999, hours=1.0, spent_on="2026-10-07")

    run = await orchestrator.run_full_sync()

    entries = run.results["time_entries"]
    assert entries.synced == 3
    assert entries.errors == 1
    assert entries.status == "partial"
    assert "issue 999" in entries.error_samples[0]
    assert await _count(session_factory, TimeEntry) == 3


@pytest.mark.asyncio
async def test_database_failure_is_counted_per_record(
    orchestrator, fake_redmine, session_factory, monkeypatch
) -> None:
    fake_redmine.add_user(1, "Ada", "Lovelace")
    fake_redmine.add_user(2, "Alan", "Turing")
    original = synced_repo.upsert_by_external_id

    async def _failing_for_alan(session, model, *, external_id, **kwargs):
        if external_id == 2:
            raise OperationalError("INSERT INTO users", {}, Exception("database is locked"))
        return await original(session, model, external_id=external_id, **kwargs)

    monkeypatch.setattr(synced_repo, "upsert_by_external_id", _failing_for_alan)

    result = await orchestrator.run_entity_sync("users", "full")

    assert result.synced == 1
    assert result.errors == 1
    assert "users upsert failed" in result.error_samples[0]
    assert await _count(session_factory, User) == 1


@pytest.mark.asyncio
async def test_auth_failure_fails_one_stage_only(orchestrator, fake_redmine) -> None:
    fake_redmine.add_user(1, "Ada", "Lovelace")
    fake_redmine.add_project(10, "Apollo")
    fake_redmine.fail("/users.json", 401)

    run = await orchestrator.run_full_sync()

    assert run.results["users"].status == "failed"
    assert run.results["projects"].status == "success"
    assert run.status == "partial"
    times = await orchestrator.get_last_sync_times()
    assert times["users"] is None
    assert times["projects"] is not None


@pytest.mark.asyncio
async def test_project_manager_resolved_from_custom_field(
    settings, client, session_factory, fake_redmine, seeder
) -> None:
    await seeder.user("Margaret Hamilton", role="manager")
    fake_redmine.add_project(10, "Apollo", custom_fields=[{"id": 4, "name": "Project Manager", "value": "hamilton"}])
    fake_redmine.add_project(11, "Apollo Guidance", parent_id=10, custom_fields=[])
    resolving = SyncOrchestrator(
        client=client,
        session_factory=session_factory,
        settings=settings.model_copy(update={"sync_resolve_project_managers": True}),
    )

    result = await resolving.run_entity_sync("projects", "full")

    assert result.synced == 2
    async with session_factory() as session:
        projects = {row.external_id: row for row in (await session.execute(select(Project))).scalars()}
        manager = (await session.execute(select(User).where(User.role == "manager"))).scalar_one()
    assert projects[10].manager_id == manager.id
    # Child inherits from its parent after an empty detail lookup.
    assert projects[11].manager_id == manager.id
    assert fake_redmine.requests_for("/projects/11.json")


@pytest.mark.asyncio
async def test_project_members_mirrored_and_pruned(orchestrator, fake_redmine, session_factory) -> None:
    _seed_tracker(fake_redmine)
    await orchestrator.run_full_sync()
    fake_redmine.memberships[10] = [
        {"id": 500, "project": {"id": 10, "name": "Apollo"}, "user": {"id": 1, "name": "Ada Lovelace"},
         "roles": [{"id": 3, "name": "Manager"}]},
        {"id": 501, "project": {"id": 10, "name": "Apollo"}, "group": {"id": 40, "name": "Reviewers"},
         "roles": [{"id": 4, "name": "Reporter"}]},
    ]
    fake_redmine.fail("/projects/11/memberships.json", 403)

    result = await orchestrator.sync_project_members()

    assert result.synced == 2
    async with session_factory() as session:
        members = {row.external_id: row for row in (await session.execute(select(ProjectMember))).scalars()}
        ada = (await session.execute(select(User).where(User.external_id == 1))).scalar_one()
    assert members[500].user_id == ada.id
    assert members[500].roles_json == [{"id": 3, "name": "Manager"}]
    assert members[501].user_id is None
    assert members[501].remote_group_id == 40

    fake_redmine.memberships[10] = fake_redmine.memberships[10][:1]
    pruned = await orchestrator.sync_project_members()

    assert pruned.deleted == 1
    assert await _count(session_factory, ProjectMember) == 1
