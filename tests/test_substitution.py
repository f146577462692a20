"""
Tests for ${VAR} substitution and step materialization.
"""

import pytest

from matrixci.exceptions import SubstitutionError
from matrixci.pipeline.types import (
    EventKind, Leg, OnFailure, SecretReference, StepSpec, TriggerContext,
)
from matrixci.variables.substitution import VariableSubstitutor


PUSH = TriggerContext(event=EventKind.PUSH, commit="deadbeef", branch="main")
TAG = TriggerContext(event=EventKind.TAG, commit="deadbeef", tag="v1.0.0")
AMD64 = Leg(0, {'ARCH': 'amd64', 'TARGET': 'x86_64-unknown-linux-musl'})
ARM64 = Leg(1, {'ARCH': 'arm64', 'TARGET': 'aarch64-unknown-linux-musl'})


def make_step(commands, environment=None, on_failure=None):
    return StepSpec(
        name="build",
        image="nixpkgs/nix:nixos-22.05",
        commands=tuple(commands),
        environment=environment or {},
        on_failure=on_failure,
    )


class TestSubstitute:
    """String-level substitution."""

    def setup_method(self):
        self.substitutor = VariableSubstitutor()

    def test_simple_reference(self):
        assert self.substitutor.substitute("arch=${ARCH}", {'ARCH': 'amd64'}) == "arch=amd64"

    def test_default_used_when_unset(self):
        assert self.substitutor.substitute("${TAG:-latest}", {}) == "latest"

    def test_default_used_when_empty(self):
        assert self.substitutor.substitute("${TAG:-latest}", {'TAG': ''}) == "latest"

    def test_default_not_used_when_set(self):
        assert self.substitutor.substitute("${TAG:-latest}", {'TAG': 'v1'}) == "v1"

    def test_default_may_reference_variable(self):
        variables = {'CI_COMMIT_SHA': 'deadbeef'}
        assert self.substitutor.substitute("${CI_COMMIT_TAG:-$CI_COMMIT_SHA}", variables) == "deadbeef"

    def test_default_may_use_braced_reference(self):
        variables = {'CI_COMMIT_SHA': 'deadbeef'}
        text = "v=${CI_COMMIT_TAG:-${CI_COMMIT_SHA}} arch=${ARCH:-amd64}"
        assert self.substitutor.substitute(text, variables) == "v=deadbeef arch=amd64"

    def test_undefined_in_default_fails(self):
        with pytest.raises(SubstitutionError) as exc_info:
            self.substitutor.substitute("${A:-$B}", {})
        assert exc_info.value.undefined == ['B']

    def test_dollar_escape(self):
        assert self.substitutor.substitute("cost $${ARCH}", {'ARCH': 'x'}) == "cost ${ARCH}"

    def test_bare_shell_variables_untouched(self):
        text = "echo $DOCKER_AUTH > /root/.docker/config.json"
        assert self.substitutor.substitute(text, {}) == text

    def test_undefined_lists_every_name(self):
        with pytest.raises(SubstitutionError) as exc_info:
            self.substitutor.substitute("${ONE} ${TWO} ${ONE}", {})
        assert exc_info.value.undefined == ['ONE', 'TWO']

    def test_invalid_expression_is_undefined(self):
        with pytest.raises(SubstitutionError):
            self.substitutor.substitute("${not valid}", {})

    def test_passthrough_names_left_verbatim(self):
        assert self.substitutor.substitute("${TOKEN}", {}, passthrough={'TOKEN'}) == "${TOKEN}"

    def test_bool_values_rendered_lowercase(self):
        assert self.substitutor.substitute("${FLAG}", {'FLAG': True}) == "true"


class TestMaterialize:
    """Step materialization against leg and trigger variables."""

    def setup_method(self):
        self.substitutor = VariableSubstitutor()

    def test_leg_variable_substituted(self):
        step = make_step(["nix-build --attr releasePackages.${ARCH}"])
        materialized = self.substitutor.materialize(step, AMD64, PUSH)
        assert materialized.commands == ("nix-build --attr releasePackages.amd64",)

    def test_version_falls_back_to_commit_on_push(self):
        step = make_step(["build --version ${CI_COMMIT_TAG:-$CI_COMMIT_SHA}", "echo ${CI_BUILD_VERSION}"])
        materialized = self.substitutor.materialize(step, AMD64, PUSH)
        assert materialized.commands == ("build --version deadbeef", "echo deadbeef")

    def test_version_uses_tag_on_tag_event(self):
        step = make_step(["build --version ${CI_COMMIT_TAG:-$CI_COMMIT_SHA}", "echo ${CI_BUILD_VERSION}"])
        materialized = self.substitutor.materialize(step, AMD64, TAG)
        assert materialized.commands == ("build --version v1.0.0", "echo v1.0.0")

    def test_tag_ignored_when_event_is_not_tag(self):
        """A tag name on a push context does not become the version."""
        context = TriggerContext(event=EventKind.PUSH, commit="deadbeef", tag="v9")
        assert context.version == "deadbeef"
        assert 'CI_COMMIT_TAG' not in context.variables()

    def test_leg_beats_trigger_beats_step_env(self):
        step = make_step(
            ["echo ${ARCH} ${CI_COMMIT_SHA} ${EXTRA}"],
            environment={'ARCH': 'from-env', 'CI_COMMIT_SHA': 'from-env', 'EXTRA': 'from-env'},
        )
        materialized = self.substitutor.materialize(step, AMD64, PUSH)
        assert materialized.commands == ("echo amd64 deadbeef from-env",)

    def test_env_values_substituted(self):
        step = make_step(["true"], environment={
            'DOCKER_PLATFORM': 'linux/${ARCH}',
            'CONTAINER_NAME': 'dxflrs/${ARCH}_garage',
        })
        materialized = self.substitutor.materialize(step, ARM64, PUSH)
        assert materialized.environment['DOCKER_PLATFORM'] == 'linux/arm64'
        assert materialized.environment['CONTAINER_NAME'] == 'dxflrs/arm64_garage'

    def test_environment_includes_leg_and_trigger_variables(self):
        materialized = self.substitutor.materialize(make_step(["true"]), AMD64, TAG)
        assert materialized.environment['ARCH'] == 'amd64'
        assert materialized.environment['CI_COMMIT_TAG'] == 'v1.0.0'
        assert materialized.environment['CI_PIPELINE_EVENT'] == 'tag'

    def test_secret_entries_not_substituted(self):
        """Secret references are carried unresolved; ${NAME} of a secret stays for the shell."""
        step = make_step(
            ["echo ${DOCKER_AUTH} > config.json"],
            environment={'DOCKER_AUTH': SecretReference('docker_auth')},
        )
        materialized = self.substitutor.materialize(step, AMD64, PUSH)

        assert materialized.commands == ("echo ${DOCKER_AUTH} > config.json",)
        assert materialized.secrets == {'DOCKER_AUTH': SecretReference('docker_auth')}
        assert 'DOCKER_AUTH' not in materialized.environment

    def test_unresolved_reference_fails_whole_step(self):
        step = make_step(["echo ${ARCH}", "echo ${MISSING}"], environment={'X': '${ALSO_MISSING}'})
        with pytest.raises(SubstitutionError) as exc_info:
            self.substitutor.materialize(step, AMD64, PUSH)

        assert exc_info.value.undefined == ['ALSO_MISSING', 'MISSING']
        assert exc_info.value.step == "build"

    def test_plain_tag_reference_fails_on_push(self):
        step = make_step(["echo ${CI_COMMIT_TAG}"])
        with pytest.raises(SubstitutionError):
            self.substitutor.materialize(step, AMD64, PUSH)

    def test_on_failure_commands_materialized(self):
        step = make_step(["./test.sh"], on_failure=OnFailure(commands=("cat /tmp/${ARCH}.log",)))
        materialized = self.substitutor.materialize(step, ARM64, PUSH)
        assert materialized.on_failure.commands == ("cat /tmp/arm64.log",)
        assert materialized.on_failure.recover is False

    def test_legs_are_isolated(self):
        """Materializing one step against two legs never mixes their values."""
        step = make_step(
            ["nix-build --attr releasePackages.${ARCH}", "echo ${TARGET}"],
            environment={'PLATFORM': 'linux/${ARCH}'},
        )
        amd = self.substitutor.materialize(step, AMD64, PUSH)
        arm = self.substitutor.materialize(step, ARM64, PUSH)
        amd_again = self.substitutor.materialize(step, AMD64, PUSH)

        assert amd == amd_again
        assert all('arm64' not in c and 'aarch64' not in c for c in amd.commands)
        assert all('amd64' not in c and 'x86_64' not in c for c in arm.commands)
        assert amd.environment['PLATFORM'] == 'linux/amd64'
        assert arm.environment['PLATFORM'] == 'linux/arm64'
        # The step definition itself is untouched
        assert step.commands[0] == "nix-build --attr releasePackages.${ARCH}"
