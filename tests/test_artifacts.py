"""Circuit validation, exponent parsing, artifact layout and the store"""

import logging

import pytest

from ceremony.artifacts import (
    STAGE_ORDER,
    ArtifactLayout,
    ArtifactStore,
    CircuitDescriptor,
    PipelineState,
    Stage,
    parse_power,
)
from ceremony.errors import InputValidationError


class TestCircuitDescriptor:
    def test_name_is_source_stem(self, circuit_file):
        circuit = CircuitDescriptor.from_source(circuit_file)
        assert circuit.name == "Demo"
        assert circuit.source == circuit_file.resolve()

    def test_accepts_string_path(self, circuit_file):
        assert CircuitDescriptor.from_source(str(circuit_file)).name == "Demo"

    def test_rejects_wrong_extension(self, tmp_path):
        source = tmp_path / "Demo.txt"
        source.write_text("x")
        with pytest.raises(InputValidationError, match=".circom extension"):
            CircuitDescriptor.from_source(source)

    def test_rejects_missing_file(self, tmp_path):
        with pytest.raises(InputValidationError, match="does not exist"):
            CircuitDescriptor.from_source(tmp_path / "Missing.circom")

    def test_rejects_empty_reference(self):
        with pytest.raises(InputValidationError, match="required"):
            CircuitDescriptor.from_source("")

    def test_rejects_unsafe_name(self, tmp_path):
        source = tmp_path / "-rf.circom"
        source.write_text("x")
        with pytest.raises(InputValidationError, match="filesystem-safe"):
            CircuitDescriptor.from_source(source)


class TestParsePower:
    @pytest.mark.parametrize("value, expected", [("12", 12), (12, 12), (" 17 ", 17), ("0", 0)])
    def test_valid(self, value, expected):
        assert parse_power(value) == expected

    @pytest.mark.parametrize("value", ["1.5", "-3", "abc", "12a", True, -1])
    def test_invalid(self, value):
        with pytest.raises(InputValidationError):
            parse_power(value)

    @pytest.mark.parametrize("value", [None, ""])
    def test_missing(self, value):
        with pytest.raises(InputValidationError, match="--power"):
            parse_power(value)

    def test_large_exponent_warns(self, caplog):
        caplog.set_level(logging.WARNING)
        assert parse_power("30") == 30
        assert "exceeds" in caplog.text


class TestArtifactLayout:
    def test_final_paths(self, layout, setup_config):
        build = setup_config.build_path / "Demo"
        assert layout.ptau_final.path == setup_config.ceremony_path / "pot12_final.ptau"
        assert layout.r1cs.path == build / "Demo.r1cs"
        assert layout.sym.path == build / "Demo.sym"
        assert layout.wasm.path == build / "Demo_js" / "Demo.wasm"
        assert layout.zkey_final.path == build / "keys" / "Demo_final.zkey"
        assert layout.verification_key.path == build / "keys" / "verification_key.json"

    def test_step_names_are_zero_padded(self, layout):
        assert layout.ptau_step(0).name == "pot12_0000.ptau"
        assert layout.ptau_step(3).name == "pot12_0003.ptau"
        assert layout.zkey_step(2).name == "Demo_0002.zkey"
        assert layout.ptau_challenge.name == "challenge_0003"
        assert layout.ptau_response.name == "response_0003"
        assert layout.zkey_challenge.name == "challenge_phase2_0003"
        assert layout.zkey_response.name == "response_phase2_0003"

    def test_terminals_follow_stage_order(self, layout):
        terminals = [layout.terminal(stage) for stage in STAGE_ORDER]
        assert [t.stage for t in terminals] == list(STAGE_ORDER)
        assert all(t.final for t in terminals)

    def test_intermediates_are_never_final(self, layout):
        intermediates = layout.phase1_intermediates() + layout.phase2_intermediates()
        assert intermediates
        assert not any(artifact.final for artifact in intermediates)
        final_paths = {artifact.path for artifact in layout.final_artifacts()}
        assert final_paths.isdisjoint(artifact.path for artifact in intermediates)

    def test_phase1_is_shared_across_circuits(self, tmp_path, layout, setup_config):
        other_source = tmp_path / "Other.circom"
        other_source.write_text("x")
        other = ArtifactLayout.for_circuit(
            CircuitDescriptor.from_source(other_source), 12,
            setup_config.ceremony_path, setup_config.build_path)
        assert other.ptau_final.path == layout.ptau_final.path
        assert other.r1cs.path != layout.r1cs.path


class TestArtifactStore:
    def test_empty_file_does_not_count(self, layout, store):
        path = layout.r1cs.path
        path.parent.mkdir(parents=True)
        path.write_bytes(b"")
        assert not store.exists(layout.r1cs)
        path.write_bytes(b"r1cs")
        assert store.exists(layout.r1cs)

    def test_staging_path_keeps_extension(self, layout):
        staged = ArtifactStore.staging_path(layout.ptau_final)
        assert staged.name == "pot12_final.staging.ptau"
        assert staged.parent == layout.ptau_final.path.parent

    def test_promote_replaces_atomically(self, layout, store):
        terminal = layout.ptau_final
        staged = store.staging_path(terminal)
        store.ensure_dir(staged.parent)
        staged.write_text("new")
        terminal.path.write_text("old")

        assert store.promote(staged, terminal) == terminal.path
        assert terminal.path.read_text() == "new"
        assert not staged.exists()

    def test_discard_staging(self, layout, store):
        staged = store.staging_path(layout.zkey_final)
        store.ensure_dir(staged.parent)
        staged.write_text("partial")
        store.discard_staging(layout.zkey_final)
        assert not staged.exists()

    def test_remove_missing_file(self, tmp_path, store):
        assert store.remove(tmp_path / "nothing") is False

    def test_digest_is_stable(self, store, layout):
        path = layout.r1cs.path
        path.parent.mkdir(parents=True)
        path.write_bytes(b"constraints")
        assert store.digest(layout.r1cs) == store.digest(layout.r1cs)
        assert store.size(layout.r1cs) == len(b"constraints")


class TestPipelineState:
    def test_probe_reflects_terminal_presence(self, layout, store):
        for artifact in (layout.r1cs, layout.ptau_final):
            artifact.path.parent.mkdir(parents=True, exist_ok=True)
            artifact.path.write_text("done")

        state = PipelineState.probe(store, layout)
        assert state.is_complete(Stage.COMPILE)
        assert state.is_complete(Stage.PHASE1)
        assert state.pending() == [Stage.PHASE2, Stage.EXPORT]

    def test_mark_complete(self):
        state = PipelineState()
        assert state.pending() == list(STAGE_ORDER)
        state.mark_complete(Stage.COMPILE)
        assert state.is_complete(Stage.COMPILE)
