"""
Resource declarations and deferred values.

A ResourceNode is pure data: an id, a kind and a mapping of inputs. Inputs may
contain deferred values (Ref, Format) that point at outputs of other nodes.
Deferred values are resolved only once the dependency order is known and the
referenced outputs exist.
"""

from typing import Any, Callable, Iterator, Mapping
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Ref:
    """Placeholder for an output of another resource that may not exist yet."""

    node_id: str
    output: str

    def __str__(self) -> str:
        return f"${{{self.node_id}.{self.output}}}"


@dataclass(frozen=True)
class Format:
    """
    Deferred string template.

    Resolves to ``template.format(**args)`` after every Ref in ``args`` has
    been resolved.

    Example:
        Format("s3://{bucket}/config.js", bucket=site.output("bucket_name"))
    """

    template: str
    args: tuple[tuple[str, Any], ...] = ()

    def __init__(self, template: str, **args: Any):
        object.__setattr__(self, "template", template)
        object.__setattr__(self, "args", tuple(sorted(args.items())))

    def refs(self) -> list[Ref]:
        return [ref for _, value in self.args for ref in iter_refs(value)]


@dataclass
class ResourceNode:
    """
    An addressable unit of desired state.

    Attributes:
        id: Unique id, stable across runs
        kind: Type tag used to pick the provider
        inputs: Parameter name to literal value or deferred value
        depends_on: Explicit dependencies in addition to those implied by refs
    """

    id: str
    kind: str
    inputs: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    def output(self, name: str) -> Ref:
        """Return a deferred reference to one of this node's outputs."""
        return Ref(self.id, name)

    def __getitem__(self, name: str) -> Ref:
        return self.output(name)

    def references(self) -> list[Ref]:
        """All refs found in the inputs, in declaration order."""
        return list(iter_refs(self.inputs))

    @property
    def dependencies(self) -> list[str]:
        """Explicit dependencies followed by referenced ids, without duplicates."""
        seen: dict[str, None] = {}
        for dep in self.depends_on:
            seen.setdefault(dep, None)
        for ref in self.references():
            seen.setdefault(ref.node_id, None)
        return list(seen)


def iter_refs(value: Any) -> Iterator[Ref]:
    """Walk a (possibly nested) input value and yield every Ref."""
    if isinstance(value, Ref):
        yield value
    elif isinstance(value, Format):
        for _, arg in value.args:
            yield from iter_refs(arg)
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_refs(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_refs(item)


def resolve(value: Any, lookup: Callable[[Ref], Any]) -> Any:
    """
    Substitute every deferred value in ``value``.

    Args:
        value: Literal, Ref, Format or a nested dict/list of these
        lookup: Called for each Ref, returns the value to substitute

    Returns:
        The value with all refs replaced
    """
    if isinstance(value, Ref):
        return lookup(value)
    if isinstance(value, Format):
        resolved = {name: resolve(arg, lookup) for name, arg in value.args}
        return value.template.format(**resolved)
    if isinstance(value, Mapping):
        return {key: resolve(item, lookup) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve(item, lookup) for item in value]
    if isinstance(value, tuple):
        return tuple(resolve(item, lookup) for item in value)
    return value
