"""
YAML declaration files.

Example file:

    name: todo-app
    resources:
      - id: table
        kind: dynamodb:Table
        inputs:
          partition_key: lecture
      - id: add_item
        kind: lambda:Function
        inputs:
          environment:
            TABLE_NAME: ${table.table_name}
        depends_on: [layer]
    pipeline:
      resume_from_failure: true
      stages:
        - name: build
          command: npm run build
        - name: deploy
          deploy: true

A string that is exactly ``${id.output}`` becomes a Ref. A string that
contains such placeholders among other text becomes a Format.
"""

import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from moraine.core.errors import ConfigError
from moraine.core.resource import Format, Ref
from moraine.core.stack import Stack

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z0-9_\-]+)\.([A-Za-z0-9_\-]+)\}")


class ResourceDeclaration(BaseModel):
    """One entry under ``resources``."""

    id: str = Field(..., min_length=1, description="Unique resource id")
    kind: str = Field(..., min_length=1, description="Resource kind")
    inputs: dict[str, Any] = Field(default_factory=dict, description="Resource inputs")
    depends_on: list[str] = Field(default_factory=list, description="Explicit dependencies")


class StageDeclaration(BaseModel):
    """One entry under ``pipeline.stages``."""

    name: str = Field(..., min_length=1, description="Stage name")
    command: str | list[str] | None = Field(default=None, description="External command to run")
    cwd: str | None = Field(default=None, description="Working directory for the command")
    env: dict[str, str] = Field(default_factory=dict, description="Extra environment variables")
    timeout: float | None = Field(default=None, gt=0, description="Command timeout in seconds")
    deploy: bool = Field(default=False, description="Apply the declared resources")

    @model_validator(mode="after")
    def _one_action(self) -> "StageDeclaration":
        if self.deploy == (self.command is not None):
            raise ValueError(f"stage '{self.name}' needs exactly one of 'command' or 'deploy'")
        return self


class PipelineDeclaration(BaseModel):
    """The optional ``pipeline`` section."""

    name: str | None = Field(default=None, description="Pipeline name, defaults to the stack name")
    resume_from_failure: bool | None = Field(default=None, description="Resume from failed stage")
    stages: list[StageDeclaration] = Field(..., min_length=1)


class DeclarationFile(BaseModel):
    """Top-level document."""

    name: str = Field(default="default", description="Stack name")
    resources: list[ResourceDeclaration] = Field(default_factory=list)
    pipeline: PipelineDeclaration | None = None


def _escape(text: str) -> str:
    return text.replace("{", "{{").replace("}", "}}")


def parse_value(value: Any) -> Any:
    """Convert ``${id.output}`` placeholders into deferred values."""
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value)
        if whole:
            return Ref(whole.group(1), whole.group(2))
        if not _PLACEHOLDER.search(value):
            return value

        args: dict[str, Ref] = {}
        parts: list[str] = []
        last = 0
        for index, match in enumerate(_PLACEHOLDER.finditer(value)):
            parts.append(_escape(value[last:match.start()]))
            name = f"ref{index}"
            args[name] = Ref(match.group(1), match.group(2))
            parts.append("{" + name + "}")
            last = match.end()
        parts.append(_escape(value[last:]))
        return Format("".join(parts), **args)
    if isinstance(value, dict):
        return {key: parse_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [parse_value(item) for item in value]
    return value


def build_stack(document: DeclarationFile) -> Stack:
    stack = Stack(name=document.name)
    for declaration in document.resources:
        stack.resource(
            declaration.id,
            declaration.kind,
            inputs=parse_value(declaration.inputs),
            depends_on=list(declaration.depends_on),
        )
    return stack


def load_document(path: str | Path) -> DeclarationFile:
    """
    Read and validate a declaration file.

    Raises:
        ConfigError: If the file is missing, not YAML, or fails validation
    """
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read declaration file {path}: {exc}") from exc
    try:
        return DeclarationFile.model_validate(data or {})
    except ValidationError as exc:
        raise ConfigError(f"Invalid declaration file {path}: {exc}") from exc


def load_stack(path: str | Path) -> Stack:
    """Read a declaration file and return its Stack."""
    return build_stack(load_document(path))
