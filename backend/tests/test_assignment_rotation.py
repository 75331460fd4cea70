"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Round-robin assignment                                          ║
║                                                                              ║
║  1. Oldest last_lead_assigned wins, never-assigned first, ties by id         ║
║  2. Admins and inactive employees are never picked                           ║
║  3. Stale concurrent reads still hand out distinct employees                 ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import copy
from collections import Counter
from datetime import datetime, timezone

import pytest

from services.assignment_rotator import AssignmentRotator, rotation_key
from services.errors import NoEligibleAssigneeError, ConflictError, DeadlineExceededError

PAST = datetime(2000, 1, 1, tzinfo=timezone.utc)


class TestRotationOrder:

    def test_rotation_key_never_assigned_first(self):
        users = [
            {"id": "b", "last_lead_assigned": "2026-03-01T00:00:00.000000+00:00"},
            {"id": "c", "last_lead_assigned": None},
            {"id": "a", "last_lead_assigned": "2026-02-01T00:00:00.000000+00:00"},
        ]
        ordered = [u["id"] for u in sorted(users, key=rotation_key)]
        assert ordered == ["c", "a", "b"]
        print(f"✅ Rotation order: {ordered}")

    @pytest.mark.asyncio
    async def test_fairness_over_two_rounds(self, seed, rotator):
        for uid in ("emp-a", "emp-b", "emp-c"):
            await seed.user(uid, user_id=uid)

        picks = [(await rotator.assign_next()).id for _ in range(6)]

        assert picks[:3] == ["emp-a", "emp-b", "emp-c"]
        assert Counter(picks) == {"emp-a": 2, "emp-b": 2, "emp-c": 2}
        print(f"✅ 6 assignments over 3 employees: {picks}")

    @pytest.mark.asyncio
    async def test_oldest_cursor_wins(self, seed, rotator):
        await seed.user("recent", user_id="u1", last_lead_assigned="2026-03-09T10:00:00.000000+00:00")
        await seed.user("older", user_id="u2", last_lead_assigned="2026-03-01T10:00:00.000000+00:00")

        picked = await rotator.assign_next()
        assert picked.id == "u2"
        assert picked.last_lead_assigned > "2026-03-09"
        print("✅ Least recently assigned employee picked and cursor advanced")

    @pytest.mark.asyncio
    async def test_admins_and_inactive_excluded(self, seed, rotator):
        await seed.user("boss", role="admin", user_id="admin-1")
        await seed.user("gone", user_id="emp-0", is_active=False)
        await seed.user("worker", user_id="emp-1")

        picks = {(await rotator.assign_next()).id for _ in range(3)}
        assert picks == {"emp-1"}
        print("✅ Only active employees rotate")

    @pytest.mark.asyncio
    async def test_no_employee_raises(self, seed, rotator):
        await seed.user("boss", role="admin")
        with pytest.raises(NoEligibleAssigneeError):
            await rotator.assign_next()
        print("✅ NoEligibleAssigneeError without employees")

    @pytest.mark.asyncio
    async def test_deadline_checked_before_mutation(self, db, seed, rotator):
        await seed.user("worker", user_id="emp-1")
        with pytest.raises(DeadlineExceededError):
            await rotator.assign_next(deadline=PAST)

        user = await db.users.find_one({"id": "emp-1"})
        assert user["last_lead_assigned"] is None
        print("✅ Expired deadline leaves the cursor untouched")


class TestConcurrentAssignment:

    @pytest.mark.asyncio
    async def test_stale_snapshot_gets_next_employee(self, db, seed):
        await seed.user("a", user_id="emp-a")
        await seed.user("b", user_id="emp-b")

        first = AssignmentRotator(db)
        second = AssignmentRotator(db)
        snapshot = await first._load_candidates()

        async def stale():
            return copy.deepcopy(snapshot)

        first._load_candidates = stale
        second._load_candidates = stale

        one = await first.assign_next()
        two = await second.assign_next()

        assert one.id != two.id
        assert {one.id, two.id} == {"emp-a", "emp-b"}
        print(f"✅ Two callers on the same snapshot got {one.id} and {two.id}")

    @pytest.mark.asyncio
    async def test_persistent_conflict_raises(self, db, seed):
        await seed.user("a", user_id="emp-a")
        rotator = AssignmentRotator(db)

        async def phantom():
            return [{"id": "emp-a", "role": "employee", "last_lead_assigned": "never-matches"}]

        rotator._load_candidates = phantom
        with pytest.raises(ConflictError):
            await rotator.assign_next()
        print("✅ Bounded retries end in ConflictError")
