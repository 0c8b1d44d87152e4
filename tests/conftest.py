import subprocess

import pytest

import argocd_setup


class FakeRunner:
    """Stand-in for argocd_setup.run_command that records calls and replays outputs."""

    def __init__(self):
        self.calls = []
        self._responses = {}

    def on(self, *prefix, stdout="", stderr="", returncode=0):
        """Queue a result for commands starting with prefix; the last one repeats."""
        self._responses.setdefault(tuple(prefix), []).append((returncode, stdout, stderr))
        return self

    def __call__(self, command, check=True, print_output=False, quiet=False):
        self.calls.append(list(command))

        outcome = (0, "", "")
        matches = [p for p in self._responses if tuple(command[: len(p)]) == p]
        if matches:
            outcomes = self._responses[max(matches, key=len)]
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]

        returncode, stdout, stderr = outcome
        if check and returncode != 0:
            raise subprocess.CalledProcessError(
                returncode, command, output=stdout, stderr=stderr
            )
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)

    def commands_starting_with(self, *prefix):
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]


@pytest.fixture
def fake_run(monkeypatch) -> FakeRunner:
    """Replace run_command so no external CLI is executed."""
    runner = FakeRunner()
    monkeypatch.setattr(argocd_setup, "run_command", runner)
    return runner


@pytest.fixture
def sleeps(monkeypatch) -> list:
    """Record sleep delays instead of waiting."""
    delays = []
    monkeypatch.setattr(argocd_setup.time, "sleep", delays.append)
    return delays


@pytest.fixture
def setup_config(tmp_path) -> argocd_setup.SetupConfig:
    """Default settings with a real values file in a temp directory."""
    values_file = tmp_path / "argocd.yaml"
    values_file.write_text("server:\n  extraArgs:\n    - --insecure\n")
    return argocd_setup.SetupConfig(values_file=values_file, retry_delay=1)
