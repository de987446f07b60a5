"""In-memory model of stacks, resources and the typed edges between them."""
import os
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

import attrs
from attrs import define, field
from aws_lambda_powertools import Logger

from topology.errors import (
    CyclicDependencyError,
    DuplicateDeclarationError,
    InvalidDeclarationError,
    TypeMismatchError,
    UnresolvedReferenceError,
)
from topology.model import (
    Output,
    OutputRef,
    OutputType,
    Resource,
    ResourceHandle,
    ResourceKind,
    iter_references,
)
from topology.policy import SecurityBoundary

logger = Logger(service="topology", level=os.getenv("LOG_LEVEL", "INFO").upper())


@define
class InputSlot:
    name: str
    type: OutputType
    required: bool = True
    source: Optional[OutputRef] = None
    bound: Optional[Output] = None

    @property
    def pending(self) -> bool:
        return self.source is not None and self.bound is None


@define
class Stack:
    name: str
    inputs: Dict[str, InputSlot] = field(factory=dict)
    outputs: Dict[str, Output] = field(factory=dict)
    resources: Dict[str, Resource] = field(factory=dict)

    def handle(self, name: str) -> ResourceHandle:
        return self.resources[name].handle


class ResourceGraph:
    def __init__(self) -> None:
        self.stacks: Dict[str, Stack] = {}
        self.boundaries: Dict[ResourceHandle, SecurityBoundary] = {}

    # ---------- stacks ----------
    def add_stack(self, name: str) -> Stack:
        if name in self.stacks:
            raise DuplicateDeclarationError(f"stack '{name}' already exists", stack=name)
        stack = Stack(name=name)
        self.stacks[name] = stack
        return stack

    def stack(self, name: str) -> Stack:
        try:
            return self.stacks[name]
        except KeyError:
            raise InvalidDeclarationError(f"unknown stack '{name}'", stack=name) from None

    def remove_stack(self, name: str) -> Stack:
        """Remove a stack together with everything it contributed to the graph."""
        stack = self.stacks.pop(name)
        for handle in [h for h in self.boundaries if h.stack == name]:
            del self.boundaries[handle]
        for boundary in self.boundaries.values():
            boundary.discard_origin(name)
        for other in self.stacks.values():
            for slot in other.inputs.values():
                if slot.bound is not None and slot.bound.stack == name:
                    slot.bound = None
        logger.debug("Stack removed from graph", extra={"stack": name})
        return stack

    # ---------- declarations ----------
    def declare_input(
        self, stack: str, name: str, type: OutputType, required: bool = True
    ) -> InputSlot:
        target = self.stack(stack)
        if name in target.inputs:
            raise DuplicateDeclarationError(
                f"input '{name}' already declared on stack '{stack}'", stack=stack
            )
        slot = InputSlot(name=name, type=OutputType(type), required=required)
        target.inputs[name] = slot
        return slot

    def declare_resource(
        self,
        stack: str,
        kind: ResourceKind,
        name: str,
        properties: Optional[Mapping[str, Any]] = None,
        depends_on: Iterable[ResourceHandle] = (),
    ) -> ResourceHandle:
        target = self.stack(stack)
        if name in target.resources:
            raise DuplicateDeclarationError(
                f"resource '{name}' already declared on stack '{stack}'", stack=stack
            )
        properties = dict(properties or {})
        handle = ResourceHandle(stack=stack, name=name, kind=ResourceKind(kind))

        dependencies: List[str] = []
        referenced = [h.qualified_name for h in depends_on] + list(iter_references(properties))
        reachable = self.upstream(stack) | {stack}
        for qualified_name in referenced:
            if qualified_name in dependencies or qualified_name == handle.qualified_name:
                continue
            ref_stack, _, ref_name = qualified_name.partition("/")
            if ref_stack not in self.stacks or ref_name not in self.stacks[ref_stack].resources:
                raise UnresolvedReferenceError(
                    stack, name, source=qualified_name, detail="resource is not declared"
                )
            if ref_stack not in reachable:
                raise UnresolvedReferenceError(
                    stack,
                    name,
                    source=qualified_name,
                    detail=f"stack '{stack}' does not consume an output of '{ref_stack}'",
                )
            dependencies.append(qualified_name)

        target.resources[name] = Resource(
            handle=handle, properties=properties, depends_on=tuple(dependencies)
        )
        if handle.kind == ResourceKind.SECURITY_BOUNDARY:
            self.boundaries[handle] = SecurityBoundary(handle=handle)
        return handle

    def declare_output(self, stack: str, name: str, type: OutputType, value: Any) -> Output:
        target = self.stack(stack)
        if name in target.outputs:
            raise DuplicateDeclarationError(
                f"output '{name}' already declared on stack '{stack}'", stack=stack
            )
        output = Output(stack=stack, name=name, type=OutputType(type), value=value)
        target.outputs[name] = output
        return output

    def resource(self, handle: Union[ResourceHandle, str]) -> Resource:
        qualified_name = handle.qualified_name if isinstance(handle, ResourceHandle) else handle
        stack, _, name = qualified_name.partition("/")
        return self.stack(stack).resources[name]

    def boundary(self, handle: ResourceHandle) -> SecurityBoundary:
        try:
            return self.boundaries[handle]
        except KeyError:
            raise InvalidDeclarationError(
                f"unknown security boundary '{handle.qualified_name}'", stack=handle.stack
            ) from None

    # ---------- bindings ----------
    def bind_input(self, stack: str, input_name: str, source: Union[Output, OutputRef]) -> InputSlot:
        target = self.stack(stack)
        slot = target.inputs.get(input_name)
        if slot is None:
            if not isinstance(source, Output):
                raise InvalidDeclarationError(
                    f"input '{input_name}' is not declared on stack '{stack}'", stack=stack
                )
            slot = self.declare_input(stack, input_name, source.type)
        slot.source = source.ref if isinstance(source, Output) else source
        slot.bound = None
        self.try_bind(stack, slot)
        return slot

    def try_bind(self, stack: str, slot: InputSlot) -> bool:
        if slot.source is None:
            return False
        source_stack = self.stacks.get(slot.source.stack)
        if source_stack is None:
            return False
        output = source_stack.outputs.get(slot.source.name)
        if output is None:
            return False
        if output.type != slot.type:
            raise TypeMismatchError(
                stack, slot.name, slot.type.value, output.type.value, source=str(slot.source)
            )
        slot.bound = output
        return True

    def refresh_bindings(self, stack: str) -> List[InputSlot]:
        """Bind what can be bound; returns the required inputs still unbound."""
        unresolved = []
        for slot in self.stack(stack).inputs.values():
            if slot.bound is None:
                self.try_bind(stack, slot)
            if slot.required and slot.bound is None:
                unresolved.append(slot)
        return unresolved

    def input_value(self, stack: str, name: str) -> Any:
        slot = self.stack(stack).inputs.get(name)
        if slot is None:
            raise UnresolvedReferenceError(stack, name, detail="input is not declared")
        if slot.bound is None:
            self.try_bind(stack, slot)
        if slot.bound is not None:
            return slot.bound.value
        if not slot.required:
            return None
        raise UnresolvedReferenceError(
            stack, name, source=str(slot.source) if slot.source else None
        )

    def pending_references(self) -> List[Tuple[str, str, Optional[OutputRef]]]:
        pending = []
        for stack in self.stacks.values():
            for slot in self.refresh_bindings(stack.name):
                pending.append((stack.name, slot.name, slot.source))
        return pending

    # ---------- ordering ----------
    def dependencies(self, stack: str) -> List[str]:
        """Source stacks of ``stack``'s inputs, in input declaration order."""
        sources: List[str] = []
        for slot in self.stack(stack).inputs.values():
            if slot.source is not None and slot.source.stack not in sources:
                sources.append(slot.source.stack)
        return sources

    def upstream(self, stack: str) -> Set[str]:
        seen: Set[str] = set()
        todo = [stack]
        while todo:
            current = todo.pop()
            if current not in self.stacks:
                continue
            for dependency in self.dependencies(current):
                if dependency not in seen:
                    seen.add(dependency)
                    todo.append(dependency)
        return seen

    def cyclic_components(self) -> List[List[str]]:
        """Strongly connected groups of stacks that contain a cycle.

        Members are listed in stack insertion order; groups are ordered by their
        first member.
        """
        position = {name: i for i, name in enumerate(self.stacks)}
        index: Dict[str, int] = {}
        low: Dict[str, int] = {}
        trail: List[str] = []
        on_stack: Set[str] = set()
        components: List[List[str]] = []

        def connect(name: str) -> None:
            index[name] = low[name] = len(index)
            trail.append(name)
            on_stack.add(name)
            for dependency in self.dependencies(name):
                if dependency not in self.stacks:
                    continue
                if dependency not in index:
                    connect(dependency)
                    low[name] = min(low[name], low[dependency])
                elif dependency in on_stack:
                    low[name] = min(low[name], index[dependency])
            if low[name] != index[name]:
                return
            members: List[str] = []
            while True:
                member = trail.pop()
                on_stack.discard(member)
                members.append(member)
                if member == name:
                    break
            if len(members) > 1 or name in self.dependencies(name):
                components.append(sorted(members, key=position.__getitem__))

        for name in self.stacks:
            if name not in index:
                connect(name)
        return sorted(components, key=lambda members: position[members[0]])

    def cycle_through(self, start: str, within: Iterable[str]) -> List[str]:
        """A dependency path from ``start`` back to itself inside ``within``."""
        allowed = set(within)
        seen: Set[str] = set()

        def walk(name: str, path: List[str]) -> Optional[List[str]]:
            path.append(name)
            seen.add(name)
            for dependency in self.dependencies(name):
                if dependency == start:
                    return list(path)
                if dependency in allowed and dependency not in seen:
                    found = walk(dependency, path)
                    if found is not None:
                        return found
            path.pop()
            return None

        return walk(start, []) or [start]

    def find_cycles(self) -> List[List[str]]:
        """One named cycle per strongly connected group of stacks.

        Each cycle is listed in dependency order, starting from the group's
        earliest declared stack.
        """
        return [
            self.cycle_through(members[0], members) for members in self.cyclic_components()
        ]

    def find_cycle(self) -> Optional[List[str]]:
        cycles = self.find_cycles()
        return cycles[0] if cycles else None

    def stack_order(self, names: Optional[Sequence[str]] = None) -> List[str]:
        """Topological order of stacks, stable with respect to insertion order."""
        selected = [name for name in self.stacks if names is None or name in names]
        remaining = {
            name: {d for d in self.dependencies(name) if d in selected} for name in selected
        }
        order: List[str] = []
        while remaining:
            ready = next((name for name, deps in remaining.items() if not deps), None)
            if ready is None:
                raise CyclicDependencyError(self.find_cycle() or sorted(remaining))
            order.append(ready)
            del remaining[ready]
            for deps in remaining.values():
                deps.discard(ready)
        return order

    # ---------- resolution ----------
    def resolve(self) -> List[Resource]:
        """Return every resource in an order that respects all dependencies."""
        cycle = self.find_cycle()
        if cycle:
            raise CyclicDependencyError(cycle)
        pending = self.pending_references()
        if pending:
            stack, input_name, source = pending[0]
            raise UnresolvedReferenceError(
                stack, input_name, source=str(source) if source else None
            )

        resolved: List[Resource] = []
        for name in self.stack_order():
            for resource in self.stacks[name].resources.values():
                if resource.kind == ResourceKind.SECURITY_BOUNDARY:
                    boundary = self.boundaries[resource.handle]
                    resource = attrs.evolve(
                        resource,
                        properties={
                            **resource.properties,
                            "ingress": list(boundary.ingress),
                            "egress": list(boundary.egress),
                        },
                    )
                resolved.append(resource)
        logger.debug("Graph resolved", extra={"resources": len(resolved)})
        return resolved
