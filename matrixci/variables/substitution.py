"""
Variable substitution implementation.
Handles ${VAR} and ${VAR:-default} resolution against leg, trigger and
step environment variables.
"""

import re
from typing import Any, Collection, Dict, Mapping, Optional, Set

from ..exceptions import SubstitutionError
from ..pipeline.types import (
    Leg, MaterializedStep, OnFailure, SecretReference, StepSpec, TriggerContext,
)


class VariableSubstitutor:
    """
    Resolves ``${NAME}`` references in commands and environment values.

    Lookup priority:
    1. leg variable
    2. trigger-derived variable (CI_COMMIT_SHA, CI_COMMIT_TAG, ...)
    3. literal environment value declared on the step

    Names of secret environment entries are left untouched for the shell in
    the sandbox. ``$$`` escapes a literal ``$``. Bare ``$NAME`` in commands is
    shell syntax and is not substituted.
    """

    # Pattern to match ${...} variables, handling escaped $$ and one nested ${...} in a default
    VAR_PATTERN = re.compile(r'(?<!\$)\$\{((?:[^{}]|\$\{[^{}]*\})+)\}')
    NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
    # Inside a ${VAR:-default} default, both $NAME and ${NAME} are references
    DEFAULT_REF_PATTERN = re.compile(r'\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))')

    def substitute(
        self,
        text: str,
        variables: Mapping[str, Any],
        passthrough: Collection[str] = ()
    ) -> str:
        """
        Substitute variables in a single string.

        Args:
            text: String containing ${var} references
            variables: Available variables
            passthrough: Names left verbatim when not otherwise defined

        Returns:
            String with variables substituted

        Raises:
            SubstitutionError: If any reference is undefined
        """
        undefined: Set[str] = set()
        result = self._substitute_string(text, variables, passthrough, undefined)
        if undefined:
            raise SubstitutionError(f"Undefined variables: {sorted(undefined)}", undefined)
        return result

    def _substitute_string(
        self,
        text: str,
        variables: Mapping[str, Any],
        passthrough: Collection[str],
        undefined: Set[str]
    ) -> str:
        # First handle escape sequences: $$ -> $
        text = text.replace('$$', '\x00')  # Use null byte as temporary marker

        def replace_var(match):
            expression = match.group(1)
            name, has_default, default = expression.partition(':-')

            if not self.NAME_PATTERN.match(name):
                undefined.add(expression)
                return match.group(0)

            value = variables.get(name)
            if value is None and name in passthrough:
                return match.group(0)

            if has_default:
                if value is None or value == '':
                    return self._expand_default(default, variables, passthrough, undefined)
                return self._to_string(value)

            if value is None:
                undefined.add(name)
                # Keep the token; the caller raises before anything is used
                return match.group(0)
            return self._to_string(value)

        result = self.VAR_PATTERN.sub(replace_var, text)

        # Restore escaped $ from temporary marker
        return result.replace('\x00', '$')

    def _expand_default(
        self,
        default: str,
        variables: Mapping[str, Any],
        passthrough: Collection[str],
        undefined: Set[str]
    ) -> str:
        def replace_ref(match):
            name = match.group(1) or match.group(2)
            value = variables.get(name)
            if value is None:
                if name not in passthrough:
                    undefined.add(name)
                return match.group(0)
            return self._to_string(value)

        return self.DEFAULT_REF_PATTERN.sub(replace_ref, default)

    def _to_string(self, value: Any) -> str:
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return str(value)

    def build_variables(
        self,
        leg: Optional[Leg] = None,
        context: Optional[TriggerContext] = None
    ) -> Dict[str, str]:
        """
        Build the leg + trigger variable mapping.

        Leg variables shadow trigger variables of the same name.
        """
        variables: Dict[str, str] = {}
        if context is not None:
            variables.update(context.variables())
        if leg is not None:
            variables.update(leg.variables)
        return variables

    def materialize(self, step: StepSpec, leg: Leg, context: TriggerContext) -> MaterializedStep:
        """
        Produce a fully resolved step for one leg.

        Secret environment entries are carried as references and resolved
        only at launch time.

        Raises:
            SubstitutionError: If any reference is undefined. No partially
                substituted step is returned.
        """
        base = self.build_variables(leg, context)
        secrets = {
            key: value for key, value in step.environment.items()
            if isinstance(value, SecretReference)
        }
        undefined: Set[str] = set()

        literal_env: Dict[str, str] = {}
        for key, value in step.environment.items():
            if isinstance(value, SecretReference):
                continue
            literal_env[key] = self._substitute_string(value, base, secrets, undefined)

        # Leg and trigger variables take priority over step literals
        lookup: Dict[str, str] = dict(literal_env)
        lookup.update(base)

        commands = tuple(
            self._substitute_string(command, lookup, secrets, undefined)
            for command in step.commands
        )

        on_failure = None
        if step.on_failure is not None:
            on_failure = OnFailure(
                commands=tuple(
                    self._substitute_string(command, lookup, secrets, undefined)
                    for command in step.on_failure.commands
                ),
                recover=step.on_failure.recover,
            )

        if undefined:
            raise SubstitutionError(
                f"Step '{step.name}' ({leg.label}): undefined variables {sorted(undefined)}",
                undefined,
                step=step.name,
            )

        # Process environment: step literals win over injected variables
        environment = dict(base)
        environment.update(literal_env)

        return MaterializedStep(
            name=step.name,
            image=step.image,
            commands=commands,
            environment=environment,
            secrets=secrets,
            on_failure=on_failure,
        )
