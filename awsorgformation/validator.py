"""
Template and config validator schema data
"""
import yaml

from cerberus import Validator, schema_registry, rules_set_registry
from awsorgformation.errors import OrgFormationError
from awsorgformation.utils import yamlfmt


TEMPLATE_FORMAT_VERSION = '2010-09-09-OC'

ORG_RESOURCE_TYPES = [
    'OC::ORG::MasterAccount',
    'OC::ORG::OrganizationRoot',
    'OC::ORG::Account',
    'OC::ORG::OrganizationalUnit',
    'OC::ORG::ServiceControlPolicy',
]


# A reference is a literal physical id, a {Ref: logicalId} expression, or a
# list of either.
REFERENCE_RULES = """
anyof:
- type: string
- type: dict
  schema:
    Ref:
      type: string
      required: True
- type: list
  schema:
    anyof:
    - type: string
    - type: dict
      schema:
        Ref:
          type: string
          required: True
"""

REGION_RULES = """
anyof:
- type: string
- type: list
  schema:
    type: string
"""

TEMPLATE_SCHEMA = """
AWSTemplateFormatVersion:
  required: True
  type: string
  allowed:
  - '2010-09-09-OC'
Description:
  required: False
  type: string
Organization:
  required: True
  type: dict
  valuesrules:
    type: dict
    schema: organization_resource
Resources:
  required: False
  nullable: True
  type: dict
  valuesrules:
    type: dict
    schema: cloudformation_resource
DefaultOrganizationBinding:
  required: False
  type: dict
  schema: organization_binding
DefaultOrganizationBindingRegion: region
Parameters:
  required: False
  type: dict
Outputs:
  required: False
  type: dict
Metadata:
  required: False
  type: dict
Conditions:
  required: False
  type: dict
Mappings:
  required: False
  type: dict
"""

ORGANIZATION_RESOURCE_SCHEMA = """
Type:
  required: True
  type: string
  allowed:
  - OC::ORG::MasterAccount
  - OC::ORG::OrganizationRoot
  - OC::ORG::Account
  - OC::ORG::OrganizationalUnit
  - OC::ORG::ServiceControlPolicy
Properties:
  required: False
  nullable: True
  type: dict
"""

CLOUDFORMATION_RESOURCE_SCHEMA = """
Type:
  required: True
  type: string
Properties:
  required: False
  nullable: True
  type: dict
OrganizationBinding:
  required: False
  type: dict
  schema: organization_binding
DependsOnAccount: reference
DependsOnRegion: region
DependsOn:
  required: False
  type: [string, list]
Condition:
  required: False
  type: string
DeletionPolicy:
  required: False
  type: string
UpdateReplacePolicy:
  required: False
  type: string
CreationPolicy:
  required: False
  type: dict
UpdatePolicy:
  required: False
  type: dict
Metadata:
  required: False
  type: dict
"""

ORGANIZATION_BINDING_SCHEMA = """
Account: reference
OrganizationalUnit: reference
ExcludeAccount: reference
IncludeMasterAccount:
  required: False
  type: boolean
Region: region
"""

ACCOUNT_SCHEMA = """
AccountName:
  required: True
  type: string
AccountId:
  required: False
  type: [string, integer]
RootEmail:
  required: False
  type: string
Alias:
  required: False
  type: string
Tags:
  required: False
  nullable: True
  type: dict
ServiceControlPolicies: reference
"""

ORGANIZATIONAL_UNIT_SCHEMA = """
OrganizationalUnitName:
  required: True
  type: string
Accounts: reference
ServiceControlPolicies: reference
"""

SERVICE_CONTROL_POLICY_SCHEMA = """
PolicyName:
  required: True
  type: string
Description:
  required: False
  type: string
PolicyDocument:
  required: True
  type: [dict, string]
"""

ORGANIZATION_ROOT_SCHEMA = """
ServiceControlPolicies: reference
Tags:
  required: False
  nullable: True
  type: dict
"""

CONFIG_SCHEMA = """
state_bucket_name:
  required: False
  type: string
state_object:
  required: False
  type: string
state_file:
  required: False
  type: string
profile:
  required: False
  type: string
org_access_role:
  required: False
  type: string
max_concurrent_tasks:
  required: False
  type: integer
  min: 1
failed_tasks_tolerance:
  required: False
  type: integer
  min: 0
"""

PROPERTIES_SCHEMAS = {
    'OC::ORG::MasterAccount': ACCOUNT_SCHEMA,
    'OC::ORG::Account': ACCOUNT_SCHEMA,
    'OC::ORG::OrganizationalUnit': ORGANIZATIONAL_UNIT_SCHEMA,
    'OC::ORG::ServiceControlPolicy': SERVICE_CONTROL_POLICY_SCHEMA,
    'OC::ORG::OrganizationRoot': ORGANIZATION_ROOT_SCHEMA,
}


def register_schemas(log):
    rules_set_registry.add('reference', yaml.safe_load(REFERENCE_RULES))
    rules_set_registry.add('region', yaml.safe_load(REGION_RULES))
    schema_registry.add('organization_binding', yaml.safe_load(ORGANIZATION_BINDING_SCHEMA))
    schema_registry.add('organization_resource', yaml.safe_load(ORGANIZATION_RESOURCE_SCHEMA))
    schema_registry.add('cloudformation_resource', yaml.safe_load(CLOUDFORMATION_RESOURCE_SCHEMA))
    log.debug("adding subschema to schema_registry: {}".format(
            list(schema_registry.all().keys())))


def template_validator(log):
    register_schemas(log)
    vtemplate = Validator(yaml.safe_load(TEMPLATE_SCHEMA))
    log.debug("template_validator_schema: {}".format(vtemplate.schema))
    return vtemplate


def properties_validator(log, resource_type):
    register_schemas(log)
    vprops = Validator(yaml.safe_load(PROPERTIES_SCHEMAS[resource_type]))
    return vprops


def config_validator(log):
    return Validator(yaml.safe_load(CONFIG_SCHEMA))


def validate(log, validator, document, context):
    """
    Validate 'document'.  Raise OrgFormationError naming 'context' and
    the validator errors if it is not valid.
    """
    if validator.validate(document):
        log.debug("validation succeeded for {}".format(context))
        return document
    log.debug("validator errors:\n{}".format(yamlfmt(validator.errors)))
    raise OrgFormationError("schema validation failed for {}: {}".format(
            context, validator.errors))
