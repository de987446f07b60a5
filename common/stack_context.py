from typing import Optional

from attrs import define, field

import common.constants as constants


@define(slots=True, frozen=True)
class StackContext:
    prefix: str = field(default=constants.PREFIX)
    env: str = field(
        default=constants.DEFAULT_ENV,
        metadata={"description": "Deployment environment (dev, staging, prod)"},
    )
    project: str = field(default=constants.PROJECT_NAME)
    internal_tld: str = field(default=constants.INTERNAL_TLD)

    # ---------- naming ----------
    def build_stack_name(self, component: str) -> str:
        """Build a stack name.

        Examples:
            - build_stack_name("DB"): Botpress-DB
        """
        return f"{self.prefix}-{component}"

    def build_resource_id(self, resource_type: str, action: Optional[str] = None) -> str:
        """Build resource ID with optional action.

        Examples:
            - Without action: SecurityGroup
            - With action: WebSecurityGroup
        """
        if action:
            return f"{action.capitalize()}{resource_type}"
        return resource_type

    def build_log_stream_prefix(self, service: str) -> str:
        return f"{self.project}-{service}"
