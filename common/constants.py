PREFIX = "Botpress"  # Stack name prefix
PROJECT_NAME = "bp"  # Used in log stream prefixes and resource names
DEFAULT_ENV = "prod"
LOG_SERVICE_NAME = "botpress-stacks"

# Stack components, used as "<prefix>-<component>"
STACK_NETWORK = "VPC"
STACK_DATABASE = "DB"
STACK_REDIS = "Redis"
STACK_DOMAINS = "Domains"
STACK_SERVICES = "Services"
STACK_WAF = "WAF"

# Variant feature flags
FEATURE_DOMAINS = "domains"
FEATURE_WAF = "waf"
FEATURE_WEB = "web"
FEATURE_NLU = "nlu"
FEATURE_BASTION = "bastion"
DEFAULT_FEATURES = (FEATURE_DOMAINS, FEATURE_WEB, FEATURE_NLU, FEATURE_WAF)

# Environment variables read by app.py
FEATURES_ENV_VAR = "TOPOLOGY_FEATURES"
BINDING_ENV_PREFIX = "TOPOLOGY_BINDING_"
DRY_RUN_ENV_VAR = "TOPOLOGY_DRY_RUN"

VPC_CIDR = "10.0.0.0/16"
MAX_AZS = 2
NAT_GATEWAYS = 1

DB_PORT = 3306
DB_ENGINE = "aurora-postgresql"
DB_ENGINE_VERSION = "15.4"
DB_INSTANCE_CLASS = "r5.large"
DB_NAME = "default_db"
DB_MASTER_USERNAME = "master"
DB_BACKUP_RETENTION_DAYS = 14
DB_MAINTENANCE_WINDOW = "Mon:04:45-Mon:05:15"

REDIS_PORT = 6379
REDIS_NODE_TYPE = "cache.m5.large"

INTERNAL_TLD = "bp-internal"
BOTPRESS_IMAGE = "botpress/server:v12_31_9"
LOG_RETENTION_DAYS = 30

WEB_SUBDOMAIN = "botpress"
WEB_PORT = 3000
WEB_DESIRED_COUNT = 2
LANG_SUBDOMAIN = "lang"
LANG_PORT = 3100
DUCKLING_SUBDOMAIN = "duckling"
DUCKLING_PORT = 8000

HTTP_PORT = 80
HTTPS_PORT = 443

# Deploy-time no-echo parameters
LICENSE_PARAMETER = "License"
DATABASE_URL_PARAMETER = "DatabaseURL"
DOMAIN_NAME_PARAMETER = "DomainName"

# Literal-ID bootstrap bindings (used when the domains stack is disabled)
BINDING_HOSTED_ZONE_ID = "hosted_zone_id"
BINDING_HOSTED_ZONE_NAME = "hosted_zone_name"
BINDING_CERTIFICATE_ARN = "certificate_arn"

WAF_LOG_STREAM_NAME = "aws-waf-logs"
