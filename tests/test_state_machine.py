import threading
from datetime import datetime, timedelta

import pytest

from lead_autopilot import job_types
from lead_autopilot.lifecycle.events import EngagementEvent, EventOutcome
from lead_autopilot.lifecycle.state_machine import LifecycleConfig, plan_transition
from lead_autopilot.queue.registry import EMAIL, ENRICHMENT, FOLLOWUP
from lead_autopilot.storage.models import EngagementKind, JobStatus, LeadStatus
from tests.conftest import make_lead


def scored_lead(store, score=92, **fields):
    fields.setdefault("email", "owner@abcplumbing.com")
    return make_lead(store, lead_score=score, tier="Hot Lead", **fields)


def event(lead_id, kind, at=datetime(2024, 3, 5, 10, 0), **fields):
    return EngagementEvent(lead_id=lead_id, kind=kind, occurred_at=at, **fields)


class TestLifecycleConfig:
    def test_defaults(self):
        config = LifecycleConfig.from_config(None)

        assert config.auto_contact_threshold == 80
        assert config.followups == [(3, "followup-1"), (7, "followup-2"), (14, "case-study")]

    def test_followups_from_config(self):
        config = LifecycleConfig.from_config({"followup_days": [2, 5], "followup_templates": ["a", "b"]})

        assert config.followups == [(2, "a"), (5, "b")]


class TestOnScored:
    def test_schedules_intro_and_followups(self, store, queues, state_machine, clock):
        lead = scored_lead(store)

        assert state_machine.on_scored(lead.id) is True

        emails = queues.pending_for_group(str(lead.id), queue_name=EMAIL)
        assert len(emails) == 1
        assert emails[0].job_type == job_types.SEND_EMAIL
        assert emails[0].payload == {"lead_id": lead.id, "template_type": "intro"}
        assert emails[0].priority == 2
        assert emails[0].run_at == clock() + timedelta(seconds=300)

        followups = queues.pending_for_group(str(lead.id), queue_name=FOLLOWUP)
        assert [job.payload["template_type"] for job in followups] == ["followup-1", "followup-2", "case-study"]
        assert [job.run_at for job in followups] == [
            clock() + timedelta(seconds=300, days=days) for days in (3, 7, 14)
        ]
        assert store.get_lead(lead.id).outreach_scheduled_at == clock()

    def test_second_call_does_not_reschedule(self, store, queues, state_machine):
        lead = scored_lead(store)

        assert state_machine.on_scored(lead.id) is True
        assert state_machine.on_scored(lead.id) is False
        assert len(queues.pending_for_group(str(lead.id))) == 4

    @pytest.mark.parametrize(
        "fields",
        [
            {"lead_score": 79},
            {"lead_score": None},
            {"status": LeadStatus.CONTACTED},
            {"contacted_at": datetime(2024, 3, 1)},
        ],
    )
    def test_ineligible_leads(self, store, queues, state_machine, fields):
        values = {"lead_score": 92, "email": "owner@abcplumbing.com"}
        values.update(fields)
        lead = make_lead(store, **values)

        assert state_machine.on_scored(lead.id) is False
        assert queues.pending_for_group(str(lead.id)) == []

    def test_unknown_lead(self, state_machine):
        assert state_machine.on_scored(999) is False


class TestEngagementEvents:
    def test_delivered_marks_contacted(self, store, state_machine):
        lead = scored_lead(store)

        outcome = state_machine.apply_engagement_event(event(lead.id, EngagementKind.DELIVERED))

        assert outcome == EventOutcome.APPLIED
        updated = store.get_lead(lead.id)
        assert updated.status == LeadStatus.CONTACTED
        assert updated.contacted_at == datetime(2024, 3, 5, 10, 0)

    def test_first_open_qualifies_and_refreshes_enrichment(self, store, queues, state_machine):
        lead = scored_lead(store, status=LeadStatus.CONTACTED)

        state_machine.apply_engagement_event(event(lead.id, EngagementKind.OPENED))

        updated = store.get_lead(lead.id)
        assert updated.status == LeadStatus.QUALIFIED
        assert updated.engagement_score == 5
        assert updated.first_opened_at == datetime(2024, 3, 5, 10, 0)
        enrichment = queues.pending_for_group(str(lead.id), queue_name=ENRICHMENT)
        assert [job.job_type for job in enrichment] == [job_types.ENRICH_LEAD]

    def test_replayed_open_is_applied_once(self, store, queues, state_machine):
        lead = scored_lead(store, status=LeadStatus.CONTACTED)
        opened = event(lead.id, EngagementKind.OPENED, event_id="sg-evt-1")

        assert state_machine.apply_engagement_event(opened) == EventOutcome.APPLIED
        assert state_machine.apply_engagement_event(opened) == EventOutcome.DUPLICATE

        assert store.get_lead(lead.id).engagement_score == 5
        assert len(store.get_engagement_events(lead.id)) == 1
        assert len(queues.pending_for_group(str(lead.id), queue_name=ENRICHMENT)) == 1

    def test_second_distinct_open_adds_score_without_new_enrichment(self, store, queues, state_machine):
        lead = scored_lead(store, status=LeadStatus.CONTACTED)

        state_machine.apply_engagement_event(event(lead.id, EngagementKind.OPENED))
        state_machine.apply_engagement_event(event(lead.id, EngagementKind.OPENED, at=datetime(2024, 3, 6, 8, 0)))

        updated = store.get_lead(lead.id)
        assert updated.engagement_score == 10
        assert updated.first_opened_at == datetime(2024, 3, 5, 10, 0)
        assert len(queues.pending_for_group(str(lead.id), queue_name=ENRICHMENT)) == 1

    def test_click_cancels_followups(self, store, queues, state_machine):
        lead = scored_lead(store)
        state_machine.on_scored(lead.id)

        state_machine.apply_engagement_event(
            event(lead.id, EngagementKind.CLICKED, url="https://example.com/audit")
        )

        updated = store.get_lead(lead.id)
        assert updated.status == LeadStatus.QUALIFIED
        assert updated.engagement_score == 10
        assert queues.pending_for_group(str(lead.id), queue_name=FOLLOWUP) == []
        assert "Clicked link: https://example.com/audit" in store.get_activity(lead.id)

    def test_engagement_score_caps_at_100(self, store, state_machine):
        lead = scored_lead(store, engagement_score=95)

        state_machine.apply_engagement_event(event(lead.id, EngagementKind.CLICKED))

        assert store.get_lead(lead.id).engagement_score == 100

    def test_bounce_after_send_marks_lost_and_cancels_everything(self, store, queues, state_machine):
        lead = scored_lead(store)
        state_machine.on_scored(lead.id)
        state_machine.on_sent(lead.id, "msg-1", "intro", "owner@abcplumbing.com", "Hello")
        assert store.get_lead(lead.id).status == LeadStatus.CONTACTED

        state_machine.apply_engagement_event(event(lead.id, EngagementKind.BOUNCED, message_id="msg-1"))

        assert store.get_lead(lead.id).status == LeadStatus.LOST
        assert queues.pending_for_group(str(lead.id), queue_name=FOLLOWUP) == []
        assert queues.pending_for_group(str(lead.id), queue_name=EMAIL) == []
        cancelled = queues.job_store.list_jobs(FOLLOWUP, JobStatus.CANCELLED)
        assert len(cancelled) == 3

    def test_complaint_marks_lost(self, store, state_machine):
        lead = scored_lead(store, status=LeadStatus.QUALIFIED)

        state_machine.apply_engagement_event(event(lead.id, EngagementKind.COMPLAINED))

        assert store.get_lead(lead.id).status == LeadStatus.LOST

    def test_status_never_moves_backward(self, store, state_machine):
        converted = scored_lead(store, status=LeadStatus.CONVERTED)
        qualified = make_lead(store, name="Cool Air HVAC", address="9 Elm St", status=LeadStatus.QUALIFIED)

        state_machine.apply_engagement_event(event(converted.id, EngagementKind.BOUNCED))
        state_machine.apply_engagement_event(event(qualified.id, EngagementKind.DELIVERED))

        assert store.get_lead(converted.id).status == LeadStatus.CONVERTED
        assert store.get_lead(qualified.id).status == LeadStatus.QUALIFIED

    def test_unknown_lead_is_dropped(self, state_machine):
        outcome = state_machine.apply_engagement_event(event(999, EngagementKind.OPENED))

        assert outcome == EventOutcome.UNKNOWN_LEAD

    def test_plan_transition_is_pure(self, store):
        lead = scored_lead(store)

        plan = plan_transition(lead, event(lead.id, EngagementKind.CLICKED), LifecycleConfig())

        assert plan.changes["status"] == LeadStatus.QUALIFIED
        assert plan.cancel_followups is True
        assert store.get_lead(lead.id).status == LeadStatus.NEW


class TestSerializedUpdates:
    def test_bounce_while_outreach_is_being_scheduled(self, store, queues, state_machine, monkeypatch):
        lead = scored_lead(store)
        bounce = threading.Thread(
            target=state_machine.apply_engagement_event,
            args=(event(lead.id, EngagementKind.BOUNCED),),
        )
        enqueue = queues.enqueue

        def enqueue_with_bounce_waiting(*args, **kwargs):
            if bounce.ident is None:
                bounce.start()
                # The bounce waits on the lead's lock until scheduling is done
                bounce.join(timeout=0.2)
            return enqueue(*args, **kwargs)

        monkeypatch.setattr(queues, "enqueue", enqueue_with_bounce_waiting)

        assert state_machine.on_scored(lead.id) is True
        bounce.join(timeout=5)

        assert not bounce.is_alive()
        assert store.get_lead(lead.id).status == LeadStatus.LOST
        assert queues.pending_for_group(str(lead.id)) == []
        assert len(queues.job_store.list_jobs(FOLLOWUP, JobStatus.CANCELLED)) == 3

    def test_write_between_read_and_update_is_retried(self, store, state_machine, monkeypatch):
        lead = scored_lead(store, status=LeadStatus.CONTACTED)
        get_lead = store.get_lead
        versions = []

        def get_lead_then_edit(lead_id):
            current = get_lead(lead_id)
            versions.append(current.version)
            if len(versions) == 1:
                store.update_fields(lead_id, phone="512-555-0100")
            return current

        monkeypatch.setattr(store, "get_lead", get_lead_then_edit)

        outcome = state_machine.apply_engagement_event(event(lead.id, EngagementKind.CLICKED))

        assert outcome == EventOutcome.APPLIED
        assert versions == [versions[0], versions[0] + 1]
        updated = get_lead(lead.id)
        assert updated.engagement_score == 10
        assert updated.status == LeadStatus.QUALIFIED
        assert updated.phone == "512-555-0100"
        assert len(store.get_engagement_events(lead.id)) == 1

    def test_gives_up_after_repeated_conflicts(self, store, queues, state_machine, monkeypatch):
        lead = scored_lead(store)
        get_lead = store.get_lead

        def always_stale(lead_id):
            current = get_lead(lead_id)
            store.update_fields(lead_id, phone="512-555-0100")
            return current

        monkeypatch.setattr(store, "get_lead", always_stale)

        with pytest.raises(RuntimeError):
            state_machine.apply_engagement_event(event(lead.id, EngagementKind.OPENED))
        assert state_machine.on_scored(lead.id) is False
        assert state_machine.on_sent(lead.id, "msg-1", "intro", lead.email) is False

        updated = get_lead(lead.id)
        assert updated.engagement_score == 0
        assert updated.status == LeadStatus.NEW
        assert updated.outreach_scheduled_at is None
        assert store.get_engagement_events(lead.id) == []
        assert queues.pending_for_group(str(lead.id)) == []

    def test_scoring_and_click_racing_lose_no_update(self, store, queues, state_machine):
        lead = scored_lead(store)
        start = threading.Barrier(2)
        results = {}

        def score():
            start.wait()
            results["scheduled"] = state_machine.on_scored(lead.id)

        def click():
            start.wait()
            results["click"] = state_machine.apply_engagement_event(event(lead.id, EngagementKind.CLICKED))

        threads = [threading.Thread(target=score), threading.Thread(target=click)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert results["click"] == EventOutcome.APPLIED
        updated = store.get_lead(lead.id)
        assert updated.engagement_score == 10
        assert updated.status == LeadStatus.QUALIFIED
        assert len(store.get_engagement_events(lead.id)) == 1
        assert queues.pending_for_group(str(lead.id), queue_name=FOLLOWUP) == []
        # Whichever ran first, the other saw its write
        assert (updated.outreach_scheduled_at is not None) == results["scheduled"]


class TestSendChecks:
    def test_followup_allowed_for_contacted_lead(self, store, state_machine):
        lead = scored_lead(store, status=LeadStatus.CONTACTED, contacted_at=datetime(2024, 3, 4))

        assert state_machine.followup_allowed(store.get_lead(lead.id)) == (True, None)

    @pytest.mark.parametrize(
        "fields, reason",
        [
            ({"status": LeadStatus.QUALIFIED, "contacted_at": datetime(2024, 3, 4)}, "lead_qualified"),
            ({"status": LeadStatus.LOST, "contacted_at": datetime(2024, 3, 4)}, "lead_lost"),
            ({"status": LeadStatus.NEW}, "never_contacted"),
            ({"status": LeadStatus.CONTACTED, "contacted_at": datetime(2024, 3, 4), "email": None}, "no_email"),
        ],
    )
    def test_followup_blocked(self, store, state_machine, fields, reason):
        lead = scored_lead(store, **fields)

        assert state_machine.followup_allowed(store.get_lead(lead.id)) == (False, reason)

    def test_followup_for_missing_lead(self, state_machine):
        assert state_machine.followup_allowed(None) == (False, "lead_not_found")

    def test_intro_allowed(self, store, state_machine):
        lead = scored_lead(store)
        assert state_machine.intro_allowed(lead) == (True, None)

        state_machine.on_sent(lead.id, "msg-1", "intro", lead.email)
        assert state_machine.intro_allowed(store.get_lead(lead.id)) == (False, "already_contacted")

    def test_on_sent_records_message(self, store, state_machine, clock):
        lead = scored_lead(store)

        assert state_machine.on_sent(lead.id, "msg-1", "intro", lead.email, "Subject") is True

        updated = store.get_lead(lead.id)
        assert updated.status == LeadStatus.CONTACTED
        assert updated.contacted_at == clock()
        assert store.find_message("msg-1").lead_id == lead.id
        assert "Intro email sent" in store.get_activity(lead.id)
