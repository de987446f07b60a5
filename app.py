#!/usr/bin/env python3
"""AWS CDK entrypoint for provisioning the Botpress deployment.

The stack topology is assembled into a deployment plan first and only then
provisioned into the CDK app, one CloudFormation stack per plan stack. Feature
flags come from ``TOPOLOGY_FEATURES`` and literal bindings from
``TOPOLOGY_BINDING_<KEY>`` variables; the account and region come from the CDK
CLI defaults. Setting ``TOPOLOGY_DRY_RUN`` walks the plan with a recording
provisioner and logs the provider calls instead of synthesizing.
"""
import os

import aws_cdk as cdk
from aws_cdk import Environment
from aws_lambda_powertools import Logger

from botpress_stacks.botpress_topology import build_topology
from common import constants
from common.stack_context import StackContext
from topology.assembler import EnvironmentBindings, StackAssembler, VariantConfig
from topology.cdk_provisioner import CdkProvisioner
from topology.provisioning import PlanExecutor, RecordingProvisioner

logger = Logger(service=constants.LOG_SERVICE_NAME, level=os.getenv("LOG_LEVEL", "INFO").upper())

app = cdk.App()

env = Environment(
    account=os.getenv("CDK_DEFAULT_ACCOUNT"),
    region=os.getenv("CDK_DEFAULT_REGION"),
)

variants = VariantConfig.from_string(
    os.getenv(constants.FEATURES_ENV_VAR), default=constants.DEFAULT_FEATURES
)
bindings = EnvironmentBindings.from_environ(os.environ, constants.BINDING_ENV_PREFIX)

plan = StackAssembler(variants=variants, bindings=bindings).assemble(build_topology(StackContext()))
logger.info("Deployment plan assembled", extra=plan.summary())
plan.raise_for_errors()

if os.getenv(constants.DRY_RUN_ENV_VAR):
    recorder = RecordingProvisioner()
    PlanExecutor(recorder).apply(plan)
    logger.info("Dry run finished", extra=recorder.summary())
else:
    PlanExecutor(CdkProvisioner(app, env=env)).apply(plan)
    app.synth()
