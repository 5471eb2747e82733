"""Tests for the authority resolver: override vs default, upsert, initialization."""

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import delete, func, select, update

from steward.domains.authority.exceptions import UnknownActionTypeError
from steward.domains.authority.models import ActionType, AuthoritySetting
from steward.domains.authority.schemas import ActionContext, AuthorityLevel, MaxAmountCondition
from steward.domains.authority.services.action_type_service import ActionTypeService
from steward.domains.authority.services.authority_service import AuthorityService

USER_ID = "user-alice"
OTHER_USER_ID = "user-bob"


async def _count_settings(session, user_id=USER_ID) -> int:
    result = await session.execute(
        select(func.count()).select_from(AuthoritySetting).where(AuthoritySetting.user_id == user_id)
    )
    return result.scalar_one()


class TestEffectiveAuthority:

    @pytest.mark.asyncio
    async def test_default_then_override(self, authority, catalog, session):
        reply = catalog["send_email_reply"]

        effective = await authority.get_effective_authority_level(USER_ID, reply.id, session)
        assert effective.level == AuthorityLevel.NOTIFY
        assert effective.is_override is False
        assert effective.conditions is None

        await authority.upsert_authority_setting(USER_ID, reply.id, "approval_required", session)

        effective = await authority.get_effective_authority_level(USER_ID, reply.id, session)
        assert effective.level == AuthorityLevel.APPROVAL_REQUIRED
        assert effective.is_override is True

    @pytest.mark.asyncio
    async def test_override_survives_default_change(self, authority, action_types, catalog, session):
        reminder = catalog["create_reminder"]
        await authority.upsert_authority_setting(USER_ID, reminder.id, AuthorityLevel.NOTIFY, session)

        await session.execute(
            update(ActionType).where(ActionType.id == reminder.id).values(default_authority_level="disabled")
        )
        await session.commit()
        await action_types.invalidate()

        effective = await authority.get_effective_authority_level(USER_ID, reminder.id, session)
        assert effective.level == AuthorityLevel.NOTIFY
        assert effective.is_override is True

        other = await authority.get_effective_authority_level(OTHER_USER_ID, reminder.id, session)
        assert other.level == AuthorityLevel.DISABLED
        assert other.is_override is False

    @pytest.mark.asyncio
    async def test_repeated_resolution_is_stable(self, authority, catalog, session):
        task = catalog["delegate_task"]
        first = await authority.get_effective_authority_level(USER_ID, task.id, session)
        second = await authority.get_effective_authority_level(USER_ID, task.id, session)
        assert first == second

    @pytest.mark.asyncio
    async def test_unknown_type_raises(self, authority, catalog, session):
        with pytest.raises(UnknownActionTypeError):
            await authority.get_effective_authority_level(USER_ID, "missing-type", session)

    @pytest.mark.asyncio
    async def test_override_for_removed_type_raises(self, authority, action_types, catalog, session):
        reminder = catalog["create_reminder"]
        await authority.upsert_authority_setting(USER_ID, reminder.id, "notify", session)
        # SQLite does not enforce the foreign key, so the setting outlives its type
        await session.execute(delete(ActionType).where(ActionType.id == reminder.id))
        await session.commit()
        await action_types.invalidate()

        with pytest.raises(UnknownActionTypeError):
            await authority.get_effective_authority_level(USER_ID, reminder.id, session)


class TestUpsert:

    @pytest.mark.asyncio
    async def test_upsert_updates_in_place(self, authority, catalog, session):
        reply = catalog["send_email_reply"]
        created = await authority.upsert_authority_setting(USER_ID, reply.id, "auto", session)
        updated = await authority.upsert_authority_setting(
            USER_ID,
            reply.id,
            "notify",
            session,
            conditions=[{"kind": "max_amount", "value": 25}],
        )

        assert updated["id"] == created["id"]
        assert updated["authority_level"] == "notify"
        assert updated["conditions"] == [{"kind": "max_amount", "value": 25.0, "field": "amount"}]
        assert await _count_settings(session) == 1

    @pytest.mark.asyncio
    async def test_level_only_upsert_keeps_conditions(self, authority, catalog, session):
        reply = catalog["send_email_reply"]
        await authority.upsert_authority_setting(
            USER_ID, reply.id, "auto", session, conditions=[MaxAmountCondition(value=10)],
        )
        kept = await authority.upsert_authority_setting(USER_ID, reply.id, "notify", session)
        assert kept["authority_level"] == "notify"
        assert kept["conditions"] == [{"kind": "max_amount", "value": 10.0, "field": "amount"}]

        effective = await authority.get_effective_authority_level(USER_ID, reply.id, session)
        assert effective.conditions.conditions[0].value == 10

    @pytest.mark.asyncio
    async def test_empty_conditions_clear(self, authority, catalog, session):
        reply = catalog["send_email_reply"]
        await authority.upsert_authority_setting(
            USER_ID, reply.id, "auto", session, conditions=[MaxAmountCondition(value=10)],
        )
        cleared = await authority.upsert_authority_setting(USER_ID, reply.id, "auto", session, conditions=[])
        assert cleared["conditions"] is None

        effective = await authority.get_effective_authority_level(USER_ID, reply.id, session)
        assert effective.conditions is None

    @pytest.mark.asyncio
    async def test_upsert_unknown_type(self, authority, catalog, session):
        with pytest.raises(UnknownActionTypeError):
            await authority.upsert_authority_setting(USER_ID, "missing-type", "auto", session)
        assert await _count_settings(session) == 0

    @pytest.mark.asyncio
    async def test_upsert_invalid_level(self, authority, catalog, session):
        with pytest.raises(ValueError):
            await authority.upsert_authority_setting(USER_ID, catalog["create_reminder"].id, "yolo", session)


class TestInitialize:

    @pytest.mark.asyncio
    async def test_initialize_twice_no_duplicates(self, authority, catalog, session):
        created = await authority.initialize_user_authority_settings(USER_ID, session)
        assert len(created) == len(catalog)

        again = await authority.initialize_user_authority_settings(USER_ID, session)
        assert again == []
        assert await _count_settings(session) == len(catalog)

    @pytest.mark.asyncio
    async def test_initialize_uses_defaults_and_keeps_overrides(self, authority, catalog, session):
        reminder = catalog["create_reminder"]
        await authority.upsert_authority_setting(USER_ID, reminder.id, "disabled", session)

        created = await authority.initialize_user_authority_settings(USER_ID, session)
        assert len(created) == len(catalog) - 1

        by_type = {s["action_type_id"]: s for s in created}
        assert by_type[catalog["send_email_reply"].id]["authority_level"] == "notify"

        effective = await authority.get_effective_authority_level(USER_ID, reminder.id, session)
        assert effective.level == AuthorityLevel.DISABLED

    @pytest.mark.asyncio
    async def test_concurrent_initialize(self, cache, catalog, session_factory, session):
        services = [AuthorityService(ActionTypeService(cache=cache)) for _ in range(2)]

        async def _init(service):
            async with session_factory() as s:
                return await service.initialize_user_authority_settings(USER_ID, s)

        results = await asyncio.gather(*(_init(s) for s in services))

        assert sum(len(r) for r in results) == len(catalog)
        assert await _count_settings(session) == len(catalog)

    @pytest.mark.asyncio
    async def test_does_not_touch_other_users(self, authority, catalog, session):
        await authority.initialize_user_authority_settings(USER_ID, session)
        assert await _count_settings(session, OTHER_USER_ID) == 0


class TestBulkOperations:

    @pytest.mark.asyncio
    async def test_set_all_levels(self, authority, catalog, session):
        await authority.initialize_user_authority_settings(OTHER_USER_ID, session)

        touched = await authority.set_all_authority_levels(USER_ID, AuthorityLevel.DISABLED, session)
        assert touched == len(catalog)

        settings = await authority.list_user_settings(USER_ID, session)
        assert {s["authority_level"] for s in settings} == {"disabled"}

        others = await authority.list_user_settings(OTHER_USER_ID, session)
        assert "disabled" not in {s["authority_level"] for s in others}

    @pytest.mark.asyncio
    async def test_bulk_update_partial_success(self, authority, catalog, session):
        report = await authority.bulk_update_authority_settings(
            USER_ID,
            [
                {"action_type_id": catalog["create_reminder"].id, "authority_level": "notify"},
                {"action_type_id": "missing-type", "authority_level": "auto"},
                {"action_type_id": catalog["delegate_task"].id, "authority_level": "auto"},
            ],
            session,
        )

        assert report.succeeded == 2
        assert report.failed == 1
        assert [r.success for r in report.results] == [True, False, True]
        assert "missing-type" in report.results[1].error
        assert await _count_settings(session) == 2

    @pytest.mark.asyncio
    async def test_bulk_update_malformed_item_reported(self, authority, catalog, session):
        report = await authority.bulk_update_authority_settings(
            USER_ID,
            [
                {"action_type_id": catalog["create_reminder"].id, "authority_level": "notify"},
                {"action_type_id": catalog["send_email_reply"].id, "authority_level": "yolo"},
                {
                    "action_type_id": catalog["delegate_task"].id,
                    "authority_level": "auto",
                    "conditions": [{"kind": "max_amount", "value": -5}],
                },
                {"action_type_id": catalog["follow_up_nudge"].id, "authority_level": "auto"},
            ],
            session,
        )

        assert [r.success for r in report.results] == [True, False, False, True]
        assert report.results[1].action_type_id == catalog["send_email_reply"].id
        assert report.results[1].error
        assert await _count_settings(session) == 2

    @pytest.mark.asyncio
    async def test_list_user_settings_sorted(self, authority, catalog, session):
        await authority.initialize_user_authority_settings(USER_ID, session)
        settings = await authority.list_user_settings(USER_ID, session)
        keys = [(s["action_type"]["category"], s["action_type"]["name"]) for s in settings]
        assert keys == sorted(keys)

    @pytest.mark.asyncio
    async def test_enable_conservative(self, authority, catalog, session):
        updated = await authority.enable_conservative_automation(USER_ID, session)
        assert updated == len(catalog)

        levels = {s["action_type"]["name"]: s["authority_level"] for s in await authority.list_user_settings(USER_ID, session)}
        assert levels["send_email_reply"] == "approval_required"  # medium
        assert levels["delegate_task"] == "approval_required"     # high
        assert levels["create_reminder"] == "auto"                # low keeps default

    @pytest.mark.asyncio
    async def test_delete_user_settings(self, authority, catalog, session):
        await authority.initialize_user_authority_settings(USER_ID, session)
        await authority.initialize_user_authority_settings(OTHER_USER_ID, session)

        deleted = await authority.delete_user_authority_settings(USER_ID, session)
        assert deleted == len(catalog)
        assert await _count_settings(session) == 0
        assert await _count_settings(session, OTHER_USER_ID) == len(catalog)


class TestCheckAuthority:

    @pytest.mark.asyncio
    async def test_conditions_evaluated(self, authority, catalog, session):
        finance = catalog["modify_financial_record"]
        await authority.upsert_authority_setting(
            USER_ID, finance.id, "auto", session,
            conditions=[{"kind": "max_amount", "value": 100}],
        )
        now = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

        small = await authority.check_authority(
            USER_ID, "modify_financial_record", session, context=ActionContext(now=now, amount=40),
        )
        assert small.level == AuthorityLevel.AUTO
        assert small.conditions_met is True

        large = await authority.check_authority(
            USER_ID, "modify_financial_record", session, context=ActionContext(now=now, amount=400),
        )
        assert large.conditions_met is False
        assert "exceeds" in large.reason

    @pytest.mark.asyncio
    async def test_missing_context_fails_closed(self, authority, catalog, session):
        finance = catalog["modify_financial_record"]
        await authority.upsert_authority_setting(
            USER_ID, finance.id, "auto", session,
            conditions=[{"kind": "max_amount", "value": 100}],
        )
        check = await authority.check_authority(USER_ID, "modify_financial_record", session)
        assert check.conditions_met is False

    @pytest.mark.asyncio
    async def test_invalid_stored_conditions_fail_closed(self, authority, catalog, session):
        reply = catalog["send_email_reply"]
        await authority.upsert_authority_setting(USER_ID, reply.id, "auto", session)
        await session.execute(
            update(AuthoritySetting)
            .where(AuthoritySetting.user_id == USER_ID)
            .values(conditions=[{"kind": "eval", "code": "True"}])
        )
        await session.commit()

        check = await authority.check_authority(USER_ID, "send_email_reply", session)
        assert check.conditions_met is False
        assert check.reason == "Stored conditions are invalid"

    @pytest.mark.asyncio
    async def test_disabled(self, authority, catalog, session):
        await authority.upsert_authority_setting(USER_ID, catalog["create_reminder"].id, "disabled", session)
        check = await authority.check_authority(USER_ID, "create_reminder", session)
        assert check.level == AuthorityLevel.DISABLED
        assert check.conditions_met is False

    @pytest.mark.asyncio
    async def test_unknown_name(self, authority, catalog, session):
        with pytest.raises(UnknownActionTypeError):
            await authority.check_authority(USER_ID, "launch_rockets", session)
