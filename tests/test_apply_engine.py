"""Tests for activation of generations."""
import pytest

from gendeploy.core.apply_engine import ApplyEngine
from gendeploy.core.bundle_loader import BundleLoader
from gendeploy.models.errors import ApplyError
from gendeploy.models.generation import Generation, GenerationStatus


def pushed(make_bundle, transport, store, files=None):
    bundle = BundleLoader().load(make_bundle(files))
    transport.push(bundle, store.bundle_dir(bundle.fingerprint))
    return bundle


class TestApply:

    def test_success_activates_generation(self, make_bundle, local_transport, store):
        bundle = pushed(make_bundle, local_transport, store)
        engine = ApplyEngine(local_transport, store, "test -e {bundle_dir}/flake.nix")

        generation = engine.apply(bundle.fingerprint)

        assert generation.id == 1
        assert generation.status == GenerationStatus.ACTIVE
        assert store.current().id == 1

    def test_nonzero_exit_marks_failed(self, make_bundle, local_transport, store):
        bundle = pushed(make_bundle, local_transport, store)
        engine = ApplyEngine(local_transport, store, "echo building; echo 'error: undefined variable' >&2; exit 3")

        with pytest.raises(ApplyError) as exc_info:
            engine.apply(bundle.fingerprint)

        error = exc_info.value
        assert error.generation_id == 1
        assert error.exit_status == 3
        assert "undefined variable" in error.stderr
        assert error.diagnostics.startswith("error: undefined variable")
        assert store.get(1).status == GenerationStatus.FAILED
        assert store.current() is None

    def test_failure_leaves_current_generation_active(self, make_bundle, local_transport, store):
        good = pushed(make_bundle, local_transport, store)
        bad = pushed(make_bundle, local_transport, store, {"broken": ""})
        engine = ApplyEngine(local_transport, store, "test ! -e {bundle_dir}/broken")
        engine.apply(good.fingerprint)

        with pytest.raises(ApplyError):
            engine.apply(bad.fingerprint)

        assert store.current().id == 1
        assert store.get(2).status == GenerationStatus.FAILED

    def test_timeout_marks_failed(self, make_bundle, local_transport, store):
        bundle = pushed(make_bundle, local_transport, store)
        engine = ApplyEngine(local_transport, store, "sleep 5", timeout=0.2)

        with pytest.raises(ApplyError) as exc_info:
            engine.apply(bundle.fingerprint)

        assert exc_info.value.timed_out
        assert store.get(1).status == GenerationStatus.FAILED

    def test_same_fingerprint_is_a_no_op(self, make_bundle, local_transport, store):
        bundle = pushed(make_bundle, local_transport, store)
        engine = ApplyEngine(local_transport, store, "true")

        first = engine.apply(bundle.fingerprint)
        second = engine.apply(bundle.fingerprint)

        assert first.id == second.id == 1
        assert len(store.list()) == 1


class TestRenderCommand:

    def test_placeholders(self, local_transport, store):
        engine = ApplyEngine(local_transport, store, "x")
        generation = Generation(id=6, bundle_fingerprint="f" * 64)

        command = engine.render_command("cd {bundle_dir} && switch --gen {generation} --fp {fingerprint}", generation)

        assert command == f"cd {store.bundle_dir('f' * 64)} && switch --gen 6 --fp {'f' * 64}"

    def test_bundle_dir_is_quoted(self, local_transport, tmp_path):
        from gendeploy.core.generation_store import GenerationStore

        store = GenerationStore(local_transport, str(tmp_path / "state dir"))
        engine = ApplyEngine(local_transport, store, "x")

        command = engine.render_command("cd {bundle_dir}", Generation(id=1, bundle_fingerprint="a"))

        assert command == f"cd '{tmp_path}/state dir/bundles/a'"


class TestReactivate:

    def test_missing_bundle_dir(self, local_transport, store):
        engine = ApplyEngine(local_transport, store, "true")

        with pytest.raises(ApplyError, match="no longer on"):
            engine.reactivate(Generation(id=5, bundle_fingerprint="gone"))

    def test_rollback_command_used(self, tmp_path, local_transport, store):
        marker = tmp_path / "rolled-back"
        engine = ApplyEngine(local_transport, store, "false", rollback_command=f"echo {{generation}} > {marker}")

        engine.reactivate(Generation(id=5, bundle_fingerprint="gone"))

        assert marker.read_text().strip() == "5"

    def test_reactivation_failure(self, make_bundle, local_transport, store):
        bundle = pushed(make_bundle, local_transport, store)
        engine = ApplyEngine(local_transport, store, "exit 1")

        with pytest.raises(ApplyError, match="Reactivation of generation 1 failed"):
            engine.reactivate(Generation(id=1, bundle_fingerprint=bundle.fingerprint))
