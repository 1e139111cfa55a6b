"""Tests for the deployment state machine."""

import random
from dataclasses import replace
from datetime import timedelta

import pytest

from tierdeploy.audit import StateFile
from tierdeploy.errors import ProvisionError, ProvisionReason
from tierdeploy.models import RollingUpdate, RolloutOutcome, RolloutRecord, Tier
from tierdeploy.orchestrator import CANCELLED, State

from conftest import image, release_specs


def _seed(log, clock, tier, img, outcome=RolloutOutcome.SUCCEEDED):
    log.append(RolloutRecord(timestamp=clock.now(), tier=tier, image=img, outcome=outcome, attempt_id="earlier"))


def _seed_previous_release(log, clock):
    for name, tier in (("db", Tier.DATABASE), ("backend", Tier.BACKEND), ("frontend", Tier.FRONTEND)):
        _seed(log, clock, tier, image(name, 1))


def _states(result):
    return [t.state for t in result.transitions]


class TestRun:
    def test_full_deployment_is_promoted(self, make_orchestrator, plan, workloads, engine):
        result = make_orchestrator().run(plan)

        assert result.state is State.PROMOTED
        assert result.exit_code == 0
        assert [(r.tier, r.outcome) for r in result.records] == [
            (Tier.DATABASE, RolloutOutcome.SUCCEEDED),
            (Tier.BACKEND, RolloutOutcome.SUCCEEDED),
            (Tier.FRONTEND, RolloutOutcome.SUCCEEDED),
        ]
        assert [tier for tier, _ in workloads.applied] == [Tier.DATABASE, Tier.BACKEND, Tier.FRONTEND]
        assert engine.apply_calls == [plan.cluster]
        assert workloads.slots["shop-credentials"][1] == 1

    def test_state_sequence(self, make_orchestrator, plan):
        result = make_orchestrator().run(plan)

        assert _states(result) == [
            State.INIT,
            State.PROVISIONING,
            State.SYNCING_SECRETS,
            State.RELEASING,
            State.GATING,
            State.RELEASING,
            State.GATING,
            State.RELEASING,
            State.GATING,
            State.PROMOTED,
        ]
        assert [t.tier for t in result.transitions if t.state is State.GATING] == [
            Tier.DATABASE,
            Tier.BACKEND,
            Tier.FRONTEND,
        ]

    def test_rerun_does_not_reprovision(self, make_orchestrator, plan, engine):
        orchestrator = make_orchestrator()
        orchestrator.run(plan)
        orchestrator.run(plan)

        assert len(engine.apply_calls) == 1

    def test_backend_timeout_rolls_back_to_prior_image(self, make_orchestrator, plan, workloads, rollout_log, clock):
        _seed_previous_release(rollout_log, clock)
        workloads.never_ready.add(image("backend", 2))

        result = make_orchestrator().run(plan)

        assert result.state is State.ROLLED_BACK
        assert result.exit_code == 2
        assert State.ROLLING_BACK in _states(result)
        assert [(r.tier, r.outcome, r.image) for r in result.records] == [
            (Tier.DATABASE, RolloutOutcome.SUCCEEDED, image("db", 2)),
            (Tier.BACKEND, RolloutOutcome.FAILED, image("backend", 2)),
            (Tier.BACKEND, RolloutOutcome.ROLLED_BACK, image("backend", 1)),
        ]
        assert result.records[1].reason.startswith("rollout timed_out")
        assert Tier.FRONTEND not in [tier for tier, _ in workloads.applied]
        assert workloads.specs[Tier.BACKEND].image == image("backend", 1)

    def test_failed_gate_rolls_back(self, make_orchestrator, plan, workloads, rollout_log, clock):
        _seed_previous_release(rollout_log, clock)
        workloads.unhealthy.add(image("backend", 2))

        result = make_orchestrator().run(plan)

        assert result.state is State.ROLLED_BACK
        failed = [r for r in result.records if r.outcome is RolloutOutcome.FAILED]
        assert len(failed) == 1
        assert failed[0].reason.startswith("health gate Unhealthy")

    def test_degraded_past_patience_rolls_back(self, make_orchestrator, plan, workloads, rollout_log, clock):
        _seed_previous_release(rollout_log, clock)
        workloads.partial.add(image("backend", 2))

        result = make_orchestrator(degraded_patience_s=120).run(plan)

        assert result.state is State.ROLLED_BACK
        assert result.records[1].reason.startswith("health gate Degraded")
        assert result.records[2].outcome is RolloutOutcome.ROLLED_BACK

    def test_no_last_known_good_fails(self, make_orchestrator, plan, workloads):
        workloads.never_ready.add(image("backend", 2))

        result = make_orchestrator().run(plan)

        assert result.state is State.FAILED
        assert result.exit_code == 1
        assert "no last-known-good" in result.reason
        assert [r.outcome for r in result.records] == [RolloutOutcome.SUCCEEDED, RolloutOutcome.FAILED]

    def test_failed_image_is_never_its_own_last_known_good(self, make_orchestrator, plan, workloads, rollout_log, clock):
        # the same digest went out once before and succeeded
        _seed(rollout_log, clock, Tier.BACKEND, image("backend", 2))
        workloads.never_ready.add(image("backend", 2))

        result = make_orchestrator().run(plan)

        assert result.state is State.FAILED
        assert "no last-known-good" in result.reason
        assert workloads.applied == [
            (Tier.DATABASE, image("db", 2)),
            (Tier.BACKEND, image("backend", 2)),
            (Tier.BACKEND, image("backend", 2)),
        ]

    def test_failed_restore_ends_failed(self, make_orchestrator, plan, workloads, rollout_log, clock):
        _seed_previous_release(rollout_log, clock)
        workloads.never_ready.update({image("backend", 2), image("backend", 1)})

        result = make_orchestrator().run(plan)

        assert result.state is State.FAILED
        assert result.records[-1].outcome is RolloutOutcome.FAILED
        assert result.records[-1].image == image("backend", 1)

    def test_provisioning_failure_releases_nothing(self, make_orchestrator, plan, workloads, engine):
        engine.apply_errors = [ProvisionError(ProvisionReason.INVALID_SPEC, "unsupported instance class")]

        result = make_orchestrator().run(plan)

        assert result.state is State.FAILED
        assert "provisioning failed" in result.reason
        assert workloads.applied == []
        assert result.records == []

    def test_unexpected_provisioning_error_ends_failed(self, make_orchestrator, plan, workloads, engine, tmp_path):
        def missing_binary(name):
            raise FileNotFoundError(2, "No such file or directory", "terraform")

        engine.observe = missing_binary
        state_file = StateFile(str(tmp_path / "state.json"))
        orchestrator = make_orchestrator(state_file=state_file)

        result = orchestrator.run(plan)

        assert result.state is State.FAILED
        assert result.exit_code == 1
        assert result.reason.startswith("provisioning failed")
        assert state_file.load()["state"] == "Failed"
        assert workloads.applied == []

        assert orchestrator.rollback(plan, Tier.BACKEND).state is State.FAILED
        assert state_file.load()["state"] == "Failed"

    def test_cancellation_during_provisioning(self, make_orchestrator, plan, workloads, engine, clock):
        orchestrator = make_orchestrator()
        engine.pending_polls = 10**6
        original_observe = engine.observe

        def observe_then_cancel(name):
            if engine.apply_calls:
                orchestrator.cancel()
            return original_observe(name)

        engine.observe = observe_then_cancel

        result = orchestrator.run(plan)

        assert result.state is State.FAILED
        assert result.reason == CANCELLED
        assert len(engine.apply_calls) == 1
        assert clock.t < 1200
        assert workloads.applied == []

    def test_cancel_before_run_is_honoured(self, make_orchestrator, plan, workloads, engine):
        orchestrator = make_orchestrator()
        orchestrator.cancel()

        result = orchestrator.run(plan)

        assert result.state is State.FAILED
        assert result.reason == CANCELLED
        assert _states(result) == [State.INIT, State.FAILED]
        assert engine.apply_calls == []
        assert workloads.applied == []

    def test_new_pods_never_ready_behind_serving_old_pods_roll_back(
        self, make_orchestrator, plan, workloads, rollout_log, clock, handle
    ):
        _seed_previous_release(rollout_log, clock)
        workloads.apply_release(handle, release_specs(version=1)[0], RollingUpdate())
        workloads.never_ready.add(image("db", 2))

        result = make_orchestrator().run(plan)

        assert result.state is State.ROLLED_BACK
        assert [(r.tier, r.outcome, r.image) for r in result.records] == [
            (Tier.DATABASE, RolloutOutcome.FAILED, image("db", 2)),
            (Tier.DATABASE, RolloutOutcome.ROLLED_BACK, image("db", 1)),
        ]
        assert result.records[0].reason.startswith("rollout timed_out")
        assert [tier for tier, _ in workloads.applied if tier is not Tier.DATABASE] == []

    def test_secret_failure_releases_nothing(self, make_orchestrator, plan, workloads, secret_store):
        del secret_store.values[("shop/api", "token")]

        result = make_orchestrator().run(plan)

        assert result.state is State.FAILED
        assert "secret sync failed" in result.reason
        assert workloads.applied == []
        assert "shop-credentials" not in workloads.slots

    def test_stale_bundle_is_refreshed_before_dependent_tier(self, make_orchestrator, plan, workloads, bundle, clock):
        # the database gate alone outlasts a 10s refresh interval
        plan = replace(plan, secrets=replace(bundle, refresh_interval=timedelta(seconds=10)))

        result = make_orchestrator().run(plan)

        assert result.state is State.PROMOTED
        assert workloads.slots["shop-credentials"][1] == 2

    def test_cancellation_finishes_apply_then_fails(self, make_orchestrator, plan, workloads):
        orchestrator = make_orchestrator()
        original_apply = workloads.apply_release

        def apply_then_cancel(handle, spec, strategy, secret_name=None):
            original_apply(handle, spec, strategy, secret_name)
            if spec.tier is Tier.BACKEND:
                orchestrator.cancel()

        workloads.apply_release = apply_then_cancel

        result = orchestrator.run(plan)

        assert result.state is State.FAILED
        assert result.reason == CANCELLED
        assert [tier for tier, _ in workloads.applied] == [Tier.DATABASE, Tier.BACKEND]
        assert result.records[-1].outcome is RolloutOutcome.FAILED
        assert result.records[-1].reason == CANCELLED

    def test_cancellation_while_waiting_for_replicas(self, make_orchestrator, plan, workloads):
        orchestrator = make_orchestrator()
        workloads.never_ready.add(image("backend", 2))
        original_status = workloads.rollout_status

        def status_then_cancel(handle, deployment):
            if deployment == "backend":
                orchestrator.cancel()
            return original_status(handle, deployment)

        workloads.rollout_status = status_then_cancel

        result = orchestrator.run(plan)

        assert result.state is State.FAILED
        assert result.reason == CANCELLED
        assert [tier for tier, _ in workloads.applied] == [Tier.DATABASE, Tier.BACKEND]
        assert [r.outcome for r in result.records] == [RolloutOutcome.SUCCEEDED, RolloutOutcome.FAILED]
        assert State.ROLLING_BACK not in _states(result)

    def test_state_file_tracks_transitions(self, make_orchestrator, plan, tmp_path):
        state_file = StateFile(str(tmp_path / "state.json"))

        result = make_orchestrator(state_file=state_file).run(plan)

        saved = state_file.load()
        assert saved["state"] == "Promoted"
        assert saved["attempt_id"] == result.attempt_id
        assert [t["state"] for t in saved["transitions"]][:3] == ["Init", "Provisioning", "SyncingSecrets"]
        assert make_orchestrator().snapshot()["state"] == "Init"

    def test_each_attempt_writes_one_record_per_tier(self, make_orchestrator, plan, rollout_log):
        orchestrator = make_orchestrator()
        first = orchestrator.run(plan)
        second = orchestrator.run(plan)

        assert first.attempt_id != second.attempt_id
        assert len(first.records) == len(second.records) == 3
        assert len(rollout_log.records()) == 6


class TestManualRollback:
    def test_rollback_to_previous_succeeded_image(self, make_orchestrator, plan, workloads, rollout_log, clock):
        _seed(rollout_log, clock, Tier.BACKEND, image("backend", 1))
        _seed(rollout_log, clock, Tier.BACKEND, image("backend", 2))
        _seed(rollout_log, clock, Tier.BACKEND, image("backend", 3), RolloutOutcome.FAILED)
        workloads.specs[Tier.DATABASE] = release_specs()[0]

        result = make_orchestrator().rollback(plan, Tier.BACKEND)

        assert result.state is State.ROLLED_BACK
        assert [(r.outcome, r.image) for r in result.records] == [(RolloutOutcome.ROLLED_BACK, image("backend", 2))]
        assert result.records[0].reason == "restored after: manual rollback"

    def test_rollback_gates_before_recording(self, make_orchestrator, plan, workloads, rollout_log, clock):
        _seed(rollout_log, clock, Tier.BACKEND, image("backend", 1))
        _seed(rollout_log, clock, Tier.BACKEND, image("backend", 2))
        workloads.specs[Tier.DATABASE] = release_specs()[0]

        result = make_orchestrator().rollback(plan, Tier.BACKEND)

        assert result.state is State.ROLLED_BACK
        apply_at = workloads.events.index(("apply", Tier.BACKEND, image("backend", 1)))
        backend_samples = [e for e in workloads.events[apply_at:] if e[0] == "sample" and e[1] is Tier.BACKEND]
        # a full confirmation period of passing samples: t=0..30 at 5s
        assert len(backend_samples) == 7
        assert all(ready >= minimum for _, _, ready, minimum in backend_samples)

    def test_rollback_without_history_fails(self, make_orchestrator, plan, workloads):
        result = make_orchestrator().rollback(plan, Tier.FRONTEND)

        assert result.state is State.FAILED
        assert workloads.applied == []

    def test_rollback_blocked_by_unhealthy_dependency(self, make_orchestrator, plan, workloads, rollout_log, clock):
        _seed(rollout_log, clock, Tier.BACKEND, image("backend", 1))
        _seed(rollout_log, clock, Tier.BACKEND, image("backend", 2))
        # no database running in the cluster

        result = make_orchestrator().rollback(plan, Tier.BACKEND)

        assert result.state is State.FAILED
        assert "dependency" in result.reason.lower()
        assert workloads.applied == []


@pytest.mark.parametrize("seed", range(20))
def test_dependent_apply_always_follows_passing_dependency_sample(seed, make_orchestrator, plan, workloads, rollout_log, clock):
    """Under random readiness, no tier is applied unless its dependency's latest reading passed."""
    rng = random.Random(seed)
    _seed_previous_release(rollout_log, clock)
    workloads.ready_fn = lambda tier, want: rng.choice([want, want, want, max(want - 1, 0), 0])

    make_orchestrator(degraded_patience_s=60).run(plan)

    specs = {spec.tier: spec for spec in plan.releases}
    for i, event in enumerate(workloads.events):
        if event[0] != "apply":
            continue
        for dependency in specs[event[1]].depends_on:
            readings = [e for e in workloads.events[:i] if e[0] == "sample" and e[1] is dependency]
            assert readings, f"{event[1].value} applied without reading {dependency.value}"
            _, _, ready, minimum = readings[-1]
            assert ready >= minimum
