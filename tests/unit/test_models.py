"""Unit tests for run identity and trigger filtering."""

from sitedeploy.models import Run, TriggerEvent, accepts_trigger, normalize_ref


class TestRun:
    def test_serialization_key(self):
        run = Run(workflow='Build and Deploy', ref='refs/heads/main', commit='abc')

        assert run.key == ('Build and Deploy', 'refs/heads/main')
        assert run.key_string == 'Build and Deploy-refs/heads/main'
        assert run.branch == 'main'

    def test_run_ids_are_unique(self):
        first = Run(workflow='w', ref='refs/heads/main', commit='abc')
        second = Run(workflow='w', ref='refs/heads/main', commit='abc')

        assert first.run_id != second.run_id
        assert first.key == second.key


class TestTriggers:
    def test_normalize_ref(self):
        assert normalize_ref('main') == 'refs/heads/main'
        assert normalize_ref('refs/heads/main') == 'refs/heads/main'
        assert normalize_ref('refs/tags/v1') == 'refs/tags/v1'

    def test_push_to_configured_branch(self):
        assert accepts_trigger(TriggerEvent.PUSH, 'refs/heads/main', ['main'])

    def test_push_to_other_branch_ignored(self):
        assert not accepts_trigger(TriggerEvent.PUSH, 'refs/heads/feature', ['main'])

    def test_manual_dispatch_always_accepted(self):
        assert accepts_trigger(TriggerEvent.WORKFLOW_DISPATCH, 'refs/heads/feature', ['main'])
