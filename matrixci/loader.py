"""Pipeline loader and strict definition validation."""

from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple
import yaml

from matrixci.exceptions import SpecError, ValidationError
from matrixci.pipeline.types import (
    EnvValue, EventKind, MatrixSpec, ObjectStorageTarget, OnFailure, PipelineSpec,
    PublishSpec, RegistryTarget, SecretReference, StepSpec, WhenClause,
)


class PreservingLoader(yaml.SafeLoader):
    """YAML loader that keeps yes/no/on/off as strings instead of booleans."""
    pass


# Only 'true'/'false' resolve to booleans, so matrix values like 'no' or 'on'
# stay strings
PreservingLoader.yaml_implicit_resolvers = {
    first: [
        (tag, regexp) for tag, regexp in resolvers
        if not (tag == 'tag:yaml.org,2002:bool' and first in 'yYnNoO')
    ]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


class PipelineLoader:
    """Loads and validates pipeline YAML into an immutable PipelineSpec."""

    KNOWN_FIELDS = {'name', 'when', 'matrix', 'steps', 'publish'}
    STEP_FIELDS = {'name', 'image', 'commands', 'environment', 'when', 'on_failure'}
    WHEN_FIELDS = {'event', 'matrix', 'branch', 'tag', 'cron'}
    PUBLISH_FIELDS = {'object_storage', 'registry', 'environment', 'when'}

    def __init__(self):
        self.errors: List[ValidationError] = []
        self._axes: Optional[Set[str]] = None

    def load(self, pipeline_path: Path) -> PipelineSpec:
        """Load and validate a pipeline file."""
        try:
            with open(pipeline_path, 'r') as f:
                document = yaml.load(f, Loader=PreservingLoader)
        except (OSError, yaml.YAMLError) as e:
            raise SpecError.single(f"Failed to load pipeline: {e}")

        return self.parse(document, default_name=Path(pipeline_path).stem)

    def loads(self, text: str) -> PipelineSpec:
        """Load and validate a pipeline from a YAML string."""
        try:
            document = yaml.load(text, Loader=PreservingLoader)
        except yaml.YAMLError as e:
            raise SpecError.single(f"Failed to parse pipeline: {e}")
        return self.parse(document)

    def parse(self, document: Any, default_name: str = "pipeline") -> PipelineSpec:
        """Validate an already-decoded document."""
        self.errors = []
        self._axes = None

        if document is None or not isinstance(document, dict):
            self._add_error("Pipeline must be a YAML object/dictionary")
            self._raise_validation_errors()

        # Strict unknown field rejection
        for key in document.keys():
            if key not in self.KNOWN_FIELDS:
                self._add_error(f"Unknown field '{key}'", path=str(key))

        name = document.get('name', default_name)
        if not isinstance(name, str) or not name:
            self._add_error("'name' must be a non-empty string", path='name')
            name = default_name

        matrix = self._parse_matrix(document.get('matrix'))
        trigger = self._parse_when(document.get('when'), 'when', allow_matrix=False)

        steps_doc = document.get('steps')
        steps: Tuple[StepSpec, ...] = ()
        if not steps_doc:
            self._add_error("'steps' field is required and must not be empty", path='steps')
        elif not isinstance(steps_doc, list):
            self._add_error("'steps' must be a list", path='steps')
        else:
            steps = self._parse_steps(steps_doc)

        publish = None
        if document.get('publish') is not None:
            publish = self._parse_publish(document['publish'])

        if self.errors:
            self._raise_validation_errors()

        return PipelineSpec(steps=steps, matrix=matrix, trigger=trigger, publish=publish, name=name)

    def _parse_matrix(self, matrix: Any) -> Optional[MatrixSpec]:
        if matrix is None:
            return None
        if not isinstance(matrix, dict):
            self._add_error("'matrix' must be a dictionary", path='matrix')
            return None

        if 'include' in matrix:
            if len(matrix) > 1:
                self._add_error("'matrix.include' cannot be combined with axis lists", path='matrix')
            include = matrix['include']
            if not isinstance(include, list) or not include:
                self._add_error("'matrix.include' must be a non-empty list", path='matrix.include')
                return None

            legs = []
            for i, entry in enumerate(include):
                if not isinstance(entry, dict) or not entry:
                    self._add_error(f"'matrix.include[{i}]' must be a non-empty dictionary",
                                    path=f'matrix.include[{i}]')
                    continue
                legs.append(self._string_mapping(entry, f'matrix.include[{i}]'))
            if legs:
                self._axes = set(legs[0].keys())
            return MatrixSpec(include=tuple(legs))

        axes = []
        for axis, values in matrix.items():
            path = f'matrix.{axis}'
            if not isinstance(values, list):
                self._add_error(f"'{path}' must be a list of values", path=path)
                continue
            axes.append((str(axis), tuple(self._scalar(v, path) for v in values)))
        # Empty axes are rejected by the matrix expander
        self._axes = {name for name, _ in axes}
        return MatrixSpec(axes=tuple(axes))

    def _parse_steps(self, steps: List[Any]) -> Tuple[StepSpec, ...]:
        step_names: Set[str] = set()
        parsed = []

        for i, step in enumerate(steps):
            if not isinstance(step, dict):
                self._add_error(f"Step {i} must be a dictionary", path=f'steps[{i}]')
                continue

            # Name is required and must be unique
            name = step.get('name')
            if not name:
                self._add_error(f"Step {i} missing required 'name' field", path=f'steps[{i}]')
                name = f"<step_{i}>"
            elif not isinstance(name, str):
                self._add_error(f"Step {i} name must be a string, got {type(name).__name__}",
                                path=f'steps[{i}].name')
                name = f"<step_{i}>"
            elif name in step_names:
                self._add_error(f"Duplicate step name '{name}'", path=f'steps[{i}].name')
            else:
                step_names.add(name)

            for key in step.keys():
                if key not in self.STEP_FIELDS:
                    self._add_error(f"Step '{name}': unknown field '{key}'", path=f'steps[{i}].{key}')

            image = step.get('image')
            if not isinstance(image, str) or not image:
                self._add_error(f"Step '{name}': 'image' is required and must be a string",
                                path=f'steps[{i}].image')
                image = ""

            commands = self._parse_commands(step.get('commands'), f"Step '{name}'", f'steps[{i}].commands')
            environment = self._parse_environment(step.get('environment'), f'steps[{i}].environment')
            when = self._parse_when(step.get('when'), f'steps[{i}].when', allow_matrix=True)
            on_failure = self._parse_on_failure(step.get('on_failure'), name, f'steps[{i}].on_failure')

            parsed.append(StepSpec(
                name=name,
                image=image,
                commands=commands,
                environment=environment,
                when=when,
                on_failure=on_failure,
            ))

        return tuple(parsed)

    def _parse_commands(self, commands: Any, owner: str, path: str) -> Tuple[str, ...]:
        if not isinstance(commands, list) or not commands:
            self._add_error(f"{owner}: 'commands' must be a non-empty list", path=path)
            return ()
        result = []
        for j, command in enumerate(commands):
            if not isinstance(command, str):
                self._add_error(f"{owner}: commands[{j}] must be a string", path=f'{path}[{j}]')
                continue
            result.append(command)
        return tuple(result)

    def _parse_environment(self, environment: Any, path: str) -> Dict[str, EnvValue]:
        if environment is None:
            return {}
        if not isinstance(environment, dict):
            self._add_error(f"'{path}' must be a dictionary", path=path)
            return {}

        result: Dict[str, EnvValue] = {}
        for key, value in environment.items():
            entry_path = f'{path}.{key}'
            if isinstance(value, dict):
                secret = value.get('from_secret')
                if set(value.keys()) != {'from_secret'} or not isinstance(secret, str) or not secret:
                    self._add_error(f"'{entry_path}' must be a literal or {{from_secret: <name>}}",
                                    path=entry_path)
                    continue
                result[str(key)] = SecretReference(secret)
            else:
                result[str(key)] = self._scalar(value, entry_path)
        return result

    def _parse_when(self, when: Any, path: str, allow_matrix: bool) -> Tuple[WhenClause, ...]:
        """A when value is one clause or a list of clauses (any may match)."""
        if when is None:
            return ()
        clauses = when if isinstance(when, list) else [when]
        if not clauses:
            self._add_error(f"'{path}' must not be an empty list", path=path)
            return ()

        parsed = []
        for i, clause in enumerate(clauses):
            clause_path = f'{path}[{i}]' if isinstance(when, list) else path
            if not isinstance(clause, dict) or not clause:
                self._add_error(f"'{clause_path}' must be a non-empty dictionary", path=clause_path)
                continue
            parsed.append(self._parse_clause(clause, clause_path, allow_matrix))
        return tuple(parsed)

    def _parse_clause(self, clause: Dict[str, Any], path: str, allow_matrix: bool) -> WhenClause:
        for key in clause.keys():
            if key not in self.WHEN_FIELDS or (key == 'matrix' and not allow_matrix):
                self._add_error(f"'{path}': unknown condition '{key}'", path=f'{path}.{key}')

        event = None
        if 'event' in clause:
            events = set()
            for value in self._string_list(clause['event'], f'{path}.event'):
                try:
                    events.add(EventKind(value))
                except ValueError:
                    valid = [e.value for e in EventKind]
                    self._add_error(f"'{path}.event': unknown event '{value}', expected one of {valid}",
                                    path=f'{path}.event')
            event = frozenset(events)

        matrix = None
        if allow_matrix and 'matrix' in clause:
            if not isinstance(clause['matrix'], dict) or not clause['matrix']:
                self._add_error(f"'{path}.matrix' must be a non-empty dictionary", path=f'{path}.matrix')
            else:
                matrix = self._string_mapping(clause['matrix'], f'{path}.matrix')
                unknown = set(matrix) - (self._axes or set())
                if unknown:
                    self._add_error(f"'{path}.matrix' references unknown axes {sorted(unknown)}",
                                    path=f'{path}.matrix')

        branch = tuple(self._string_list(clause['branch'], f'{path}.branch')) if 'branch' in clause else None
        tag = tuple(self._string_list(clause['tag'], f'{path}.tag')) if 'tag' in clause else None
        cron = frozenset(self._string_list(clause['cron'], f'{path}.cron')) if 'cron' in clause else None

        return WhenClause(event=event, matrix=matrix, branch=branch, tag=tag, cron=cron)

    def _parse_on_failure(self, on_failure: Any, step_name: str, path: str) -> Optional[OnFailure]:
        if on_failure is None:
            return None
        if not isinstance(on_failure, dict):
            self._add_error(f"Step '{step_name}': on_failure must be a dictionary", path=path)
            return None
        for key in on_failure.keys():
            if key not in ('commands', 'recover'):
                self._add_error(f"Step '{step_name}': unknown on_failure field '{key}'", path=f'{path}.{key}')
        recover = on_failure.get('recover', False)
        if not isinstance(recover, bool):
            self._add_error(f"Step '{step_name}': on_failure.recover must be a boolean", path=f'{path}.recover')
            recover = False
        commands = self._parse_commands(on_failure.get('commands'), f"Step '{step_name}' on_failure",
                                        f'{path}.commands')
        return OnFailure(commands=commands, recover=recover)

    def _parse_publish(self, publish: Any) -> Optional[PublishSpec]:
        if not isinstance(publish, dict):
            self._add_error("'publish' must be a dictionary", path='publish')
            return None
        for key in publish.keys():
            if key not in self.PUBLISH_FIELDS:
                self._add_error(f"'publish': unknown field '{key}'", path=f'publish.{key}')

        object_storage = None
        storage = publish.get('object_storage')
        if storage is not None:
            fields = self._required_strings(storage, 'publish.object_storage', ['bucket', 'source'],
                                            ['key', 'content_type'])
            if fields is not None:
                self._validate_path_safety(fields['source'], 'publish.object_storage.source')
                object_storage = ObjectStorageTarget(
                    bucket=fields['bucket'],
                    source=fields['source'],
                    key=fields.get('key'),
                    content_type=fields.get('content_type', 'application/octet-stream'),
                )

        registry = None
        registry_doc = publish.get('registry')
        if registry_doc is not None:
            fields = self._required_strings(registry_doc, 'publish.registry', ['repository', 'image'], ['tag'])
            if fields is not None:
                registry = RegistryTarget(
                    repository=fields['repository'],
                    image=fields['image'],
                    tag=fields.get('tag'),
                )

        if object_storage is None and registry is None and storage is None and registry_doc is None:
            self._add_error("'publish' requires 'object_storage' or 'registry'", path='publish')

        return PublishSpec(
            object_storage=object_storage,
            registry=registry,
            environment=self._parse_environment(publish.get('environment'), 'publish.environment'),
            when=self._parse_when(publish.get('when'), 'publish.when', allow_matrix=True),
        )

    def _required_strings(self, value: Any, path: str, required: List[str],
                          optional: List[str]) -> Optional[Dict[str, str]]:
        if not isinstance(value, dict):
            self._add_error(f"'{path}' must be a dictionary", path=path)
            return None
        fields = {}
        for key in value.keys():
            if key not in required and key not in optional:
                self._add_error(f"'{path}': unknown field '{key}'", path=f'{path}.{key}')
        for key in required + optional:
            if key not in value:
                if key in required:
                    self._add_error(f"'{path}' missing required '{key}'", path=f'{path}.{key}')
                continue
            if not isinstance(value[key], str) or not value[key]:
                self._add_error(f"'{path}.{key}' must be a non-empty string", path=f'{path}.{key}')
                continue
            fields[key] = value[key]
        if any(key not in fields for key in required):
            return None
        return fields

    def _validate_path_safety(self, path: str, context: str):
        """Reject absolute paths and parent traversal; ${VAR} paths are checked after substitution."""
        if '${' in path:
            return
        if PurePosixPath(path).is_absolute() or Path(path).is_absolute():
            self._add_error(f"{context}: absolute paths not allowed", path=context)
        if '..' in PurePosixPath(path).parts:
            self._add_error(f"{context}: parent directory traversal ('..') not allowed", path=context)

    def _string_list(self, value: Any, path: str) -> List[str]:
        values = value if isinstance(value, list) else [value]
        result = []
        for item in values:
            if isinstance(item, (dict, list)) or item is None:
                self._add_error(f"'{path}' must be a string or list of strings", path=path)
                continue
            result.append(self._scalar(item, path))
        return result

    def _string_mapping(self, value: Mapping[Any, Any], path: str) -> Dict[str, str]:
        return {str(k): self._scalar(v, f'{path}.{k}') for k, v in value.items()}

    def _scalar(self, value: Any, path: str) -> str:
        if isinstance(value, bool):
            return 'true' if value else 'false'
        if isinstance(value, (str, int, float)):
            return str(value)
        self._add_error(f"'{path}' must be a scalar value, got {type(value).__name__}", path=path)
        return ""

    def _add_error(self, message: str, path: str = "", exit_code: int = 2):
        """Add validation error."""
        self.errors.append(ValidationError(message, path, exit_code))

    def _raise_validation_errors(self):
        """Raise SpecError with accumulated errors."""
        raise SpecError(self.errors)
