"""The Network, DB, Redis, Domains, Services and WAF stacks of a Botpress deployment."""
from typing import List, Optional

from topology.assembler import StackFactory

from botpress_stacks.database_stack import build_database_stack
from botpress_stacks.domains_stack import build_domains_stack
from botpress_stacks.network_stack import build_network_stack
from botpress_stacks.redis_stack import build_redis_stack
from botpress_stacks.services_stack import build_services_stack
from botpress_stacks.waf_stack import build_waf_stack
from common.stack_context import StackContext


def build_topology(context: Optional[StackContext] = None) -> List[StackFactory]:
    context = context or StackContext()
    return [
        build_network_stack(context),
        build_database_stack(context),
        build_redis_stack(context),
        build_domains_stack(context),
        build_services_stack(context),
        build_waf_stack(context),
    ]
