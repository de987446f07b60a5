"""Deploy-time secret inputs.

A parameter value is supplied when the plan is deployed, never when it is
assembled. The engine only ever holds references to it.
"""
from typing import TYPE_CHECKING, Optional

from attrs import define

from topology.model import ParameterRef, ResourceHandle, ResourceKind

if TYPE_CHECKING:
    from topology.assembler import StackScope


def declare_parameter(
    scope: "StackScope", name: str, description: str = "", no_echo: bool = True
) -> ResourceHandle:
    return scope.resource(
        ResourceKind.PARAMETER,
        name,
        {"type": "String", "no_echo": no_echo, "description": description},
    )


@define(frozen=True)
class SecretParameter:
    secret: ResourceHandle
    parameter: Optional[ResourceHandle] = None

    @classmethod
    def declare(cls, scope: "StackScope", name: str, description: str = "") -> "SecretParameter":
        """Declare a no-echo parameter and the managed secret holding its value."""
        parameter = declare_parameter(scope, name, description=description)
        secret = scope.resource(
            ResourceKind.SECRET,
            f"{name}Secret",
            {"value_from": ParameterRef(parameter)},
        )
        return cls(secret=secret, parameter=parameter)

    @classmethod
    def generated(
        cls,
        scope: "StackScope",
        name: str,
        exclude_punctuation: bool = True,
        include_space: bool = False,
    ) -> "SecretParameter":
        """Declare a secret whose value is generated by the provider."""
        secret = scope.resource(
            ResourceKind.SECRET,
            name,
            {
                "generate": {
                    "exclude_punctuation": exclude_punctuation,
                    "include_space": include_space,
                }
            },
        )
        return cls(secret=secret)

    @property
    def value(self) -> Optional[ParameterRef]:
        if self.parameter is None:
            return None
        return ParameterRef(self.parameter)
