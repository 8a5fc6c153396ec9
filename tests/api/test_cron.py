"""/cron/auto-approve-milestones"""

import pytest

from escrow_kernel.domain.lifecycle import MilestoneStatus
from escrow_kernel.models.milestone import MilestoneModel

from tests.api.conftest import CRON_SECRET, cron_headers

PATH = "/cron/auto-approve-milestones"


class TestCronAuthentication:

    def test_valid_secret_runs_batch(self, client):
        response = client.get(PATH, headers=cron_headers())
        assert response.status_code == 200
        body = response.json()
        assert body["processed"] == 0
        assert body["autoApproved"] == 0
        assert body["errors"] == []

    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"Authorization": CRON_SECRET},
            {"Authorization": "Bearer wrong-secret"},
            {"Authorization": "Basic " + CRON_SECRET},
        ],
    )
    def test_bad_credentials_are_401(self, client, headers):
        response = client.get(PATH, headers=headers)
        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_REQUIRED"

    @pytest.mark.parametrize("environ", [{}, {"ESCROW_CRON_SECRET": "   "}])
    def test_unconfigured_secret_rejects_everything(self, make_client, environ):
        client = make_client(environ=environ)
        response = client.get(PATH, headers=cron_headers())
        assert response.status_code == 401


class TestCronTrigger:

    def test_overdue_milestone_is_auto_approved(
        self, client, orders, session, session_factory, clock, gateway,
    ):
        _, milestone_id = orders.fitting_submitted()
        session.commit()
        clock.advance_hours(49)

        body = client.get(PATH, headers=cron_headers()).json()

        assert body["processed"] == 1
        assert body["autoApproved"] == 1
        assert body["approvedMilestoneIds"] == [str(milestone_id)]
        assert len(gateway.payouts("FITTING")) == 1
        with session_factory() as s:
            milestone = s.get(MilestoneModel, milestone_id)
            assert milestone.approval_status == MilestoneStatus.AUTO_APPROVED.value

    def test_milestone_inside_window_is_left_alone(self, client, orders, session, clock):
        orders.fitting_submitted()
        session.commit()
        clock.advance_hours(47)
        assert client.get(PATH, headers=cron_headers()).json()["processed"] == 0

    def test_manual_post_allowed_outside_production(self, client):
        response = client.post(PATH, headers=cron_headers())
        assert response.status_code == 200

    def test_manual_post_forbidden_in_production(self, make_client):
        client = make_client(
            environ={"ESCROW_CRON_SECRET": CRON_SECRET, "ESCROW_ENVIRONMENT": "production"},
        )
        response = client.post(PATH, headers=cron_headers())
        assert response.status_code == 403
        assert client.get(PATH, headers=cron_headers()).status_code == 200
