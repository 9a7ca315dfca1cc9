"""
Scenario 1 - settlement lifecycle

Covers:
- intake of a purchase event: budget debit, pending points, reminder
- resubmission of the same event is rejected with nothing written
- reminder delivery by the dispatcher
- verification moves the reward into the available bucket
- redemption from the available bucket
"""
from decimal import Decimal

import pytest

from app.db.models.due_item import DueItemKind, DueItemStatus

from tests.scenarios.conftest import (
    assert_budget,
    assert_wallet,
    due_items,
    submit_settlement,
    verify,
)


@pytest.mark.scenario
class TestSettlementLifecycle:

    async def test_settle_verify_redeem(
        self, test_client, db_session, budget_factory, campaign_factory, run_dispatcher, gateway, admin_headers
    ):
        await budget_factory("merchant-1", "100.00")
        await campaign_factory("merchant-1", rate="10.00")

        # Intake
        response = await submit_settlement(test_client, "order-1", base_amount="50.00")
        assert response.status_code == 201
        assert Decimal(response.json()["reward_amount"]) == Decimal("5.00")

        await assert_budget(db_session, "merchant-1", balance="95.00", spent="5.00")
        await assert_wallet(db_session, "user-1", available="0", pending="5.00")

        reminders = await due_items(db_session, DueItemKind.NOTIFICATION)
        assert [r.payload_ref for r in reminders] == ["verification_reminder:order-1"]
        expiries = await due_items(db_session, DueItemKind.POINTS_EXPIRY)
        assert len(expiries) == 1

        # Resubmission
        again = await submit_settlement(test_client, "order-1", base_amount="50.00")
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "ERR_4001"
        await assert_budget(db_session, "merchant-1", balance="95.00", spent="5.00")
        await assert_wallet(db_session, "user-1", available="0", pending="5.00")
        assert len(await due_items(db_session)) == 2

        # Reminder delivery; the expiry item is a year away
        stats = await run_dispatcher()
        assert stats.to_dict() == {"claimed": 1, "sent": 1, "retried": 0, "failed": 0, "lost": 0}
        assert len(gateway.calls) == 1
        assert gateway.calls[0]["user_ref"] == "user-1"
        assert gateway.calls[0]["data"]["external_ref"] == "order-1"
        reminders = await due_items(db_session, DueItemKind.NOTIFICATION)
        assert reminders[0].status == DueItemStatus.SENT

        # Verification
        assert await verify(test_client, "order-1") == 1
        assert await verify(test_client, "order-1") == 0
        await assert_wallet(db_session, "user-1", available="5.00", pending="0")

        # Redemption
        redeem = await test_client.post("/api/points/user-1/redeem", json={"amount": "2.00"})
        assert redeem.status_code == 201
        await assert_wallet(db_session, "user-1", available="3.00", pending="0")

        history = (await test_client.get("/api/points/user-1/history")).json()
        assert [t["kind"] for t in history] == ["redeem", "earn"]

        reconcile = await test_client.get("/api/points/user-1/reconcile", headers=admin_headers)
        assert reconcile.json()["consistent"] is True

    async def test_rejected_settlement_leaves_nothing_behind(
        self, test_client, db_session, budget_factory, campaign_factory
    ):
        await budget_factory("merchant-1", "3.00")
        await campaign_factory("merchant-1", rate="10.00")

        response = await submit_settlement(test_client, "order-1", base_amount="50.00")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ERR_2003"
        await assert_budget(db_session, "merchant-1", balance="3.00", spent="0")
        assert await due_items(db_session) == []

        # The same event settles once the merchant tops up
        await budget_factory("merchant-1", "10.00")
        retry = await submit_settlement(test_client, "order-1", base_amount="50.00")

        assert retry.status_code == 201
        await assert_budget(db_session, "merchant-1", balance="8.00", spent="5.00")

    async def test_many_events_for_one_user(
        self, test_client, db_session, budget_factory, campaign_factory
    ):
        await budget_factory("merchant-1", "100.00")
        await campaign_factory("merchant-1", rate="5.00")

        for n, base in enumerate(["20.00", "33.33", "100.00"], start=1):
            response = await submit_settlement(test_client, f"order-{n}", base_amount=base)
            assert response.status_code == 201

        # 1.00 + 1.67 + 5.00
        await assert_budget(db_session, "merchant-1", balance="92.33", spent="7.67")
        await assert_wallet(db_session, "user-1", available="0", pending="7.67")

        assert await verify(test_client, "order-2") == 1
        await assert_wallet(db_session, "user-1", available="1.67", pending="6.00")
