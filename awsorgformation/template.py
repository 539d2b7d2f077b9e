"""
Organization template model.

A template is a yaml (or json) document with an 'Organization' section
declaring accounts, organizational units and service control policies,
and an optional 'Resources' section of CloudFormation resources bound to
accounts and regions of that organization.
"""

import os
import re
import json
from collections import namedtuple

import yaml

from awsorgformation.errors import OrgFormationError
from awsorgformation.utils import calculate_hash, to_list
from awsorgformation.validator import (
    template_validator,
    properties_validator,
    validate,
)


MASTER_ACCOUNT = 'OC::ORG::MasterAccount'
ORGANIZATION_ROOT = 'OC::ORG::OrganizationRoot'
ACCOUNT = 'OC::ORG::Account'
ORGANIZATIONAL_UNIT = 'OC::ORG::OrganizationalUnit'
SERVICE_CONTROL_POLICY = 'OC::ORG::ServiceControlPolicy'

ACCOUNT_ID_PATTERN = re.compile(r'^\d{12}$')


# A reference to another entity: either a literal physical id or the
# template resource it names.  Exactly one of the two is set.
Reference = namedtuple('Reference', ['physical_id', 'resource'])

# CloudFormation resources bound to one account/region pair.
ResourceTarget = namedtuple('ResourceTarget',
        ['account_logical_id', 'region', 'resources'])


class CfnLoader(yaml.SafeLoader):
    pass


def construct_cfn_tag(loader, tag_suffix, node):
    """Map CloudFormation short form tags onto their long form."""
    if isinstance(node, yaml.ScalarNode):
        value = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    if tag_suffix == 'Ref':
        return {'Ref': value}
    if tag_suffix == 'GetAtt' and isinstance(value, str):
        return {'Fn::GetAtt': value.split('.', 1)}
    return {'Fn::' + tag_suffix: value}


CfnLoader.add_multi_constructor('!', construct_cfn_tag)


def load_yaml(text):
    return yaml.load(text, Loader=CfnLoader)


class Resource(object):

    def __init__(self, root, logical_id, resource):
        self.root = root
        self.logical_id = logical_id
        self.resource = resource
        self.type = resource['Type']
        self.properties = resource.get('Properties') or {}

    def calculate_hash(self):
        return calculate_hash(self.resource)

    def resolve_refs(self):
        pass

    def resolve(self, value, candidates):
        """
        Turn a scalar-or-list reference value into a list of Reference.
        A Ref naming no resource among 'candidates' is an error.
        """
        result = []
        for item in to_list(value):
            if isinstance(item, dict):
                logical_id = item['Ref']
                found = [c for c in candidates if c.logical_id == logical_id]
                if not found:
                    raise OrgFormationError(
                            "unable to resolve Ref {} on resource {}".format(
                            logical_id, self.logical_id))
                result.append(Reference(None, found[0]))
            else:
                result.append(Reference(str(item), None))
        return result

    def __repr__(self):
        return '<{} {}>'.format(self.type, self.logical_id)


class AccountResource(Resource):

    def __init__(self, root, logical_id, resource):
        super().__init__(root, logical_id, resource)
        props = self.properties
        if not props.get('AccountId') and not props.get('RootEmail'):
            raise OrgFormationError(
                    "both AccountId and RootEmail are missing on Account {}".format(
                    logical_id))
        self.account_name = props['AccountName']
        self.account_id = props.get('AccountId')
        if self.account_id is not None:
            self.account_id = str(self.account_id)
            if not ACCOUNT_ID_PATTERN.match(self.account_id):
                raise OrgFormationError(
                        "AccountId is expected to be 12 digits on Account {}".format(
                        logical_id))
        self.root_email = props.get('RootEmail')
        self.alias = props.get('Alias')
        self.tags = props.get('Tags') or {}
        self.service_control_policies = []
        # logical id of the organizational unit listing this account
        self.organizational_unit = None

    def calculate_hash(self):
        return calculate_hash(dict(resource=self.resource, logicalId=self.logical_id))

    def resolve_refs(self):
        self.service_control_policies = self.resolve(
                self.properties.get('ServiceControlPolicies'),
                self.root.organization_section.service_control_policies)


class MasterAccountResource(AccountResource):
    pass


class OrganizationalUnitResource(Resource):

    def __init__(self, root, logical_id, resource):
        super().__init__(root, logical_id, resource)
        self.organizational_unit_name = self.properties['OrganizationalUnitName']
        self.accounts = []
        self.service_control_policies = []

    def resolve_refs(self):
        section = self.root.organization_section
        self.accounts = self.resolve(self.properties.get('Accounts'),
                section.all_accounts())
        self.service_control_policies = self.resolve(
                self.properties.get('ServiceControlPolicies'),
                section.service_control_policies)
        for account in self.accounts:
            if account.resource is None:
                continue
            if account.resource.organizational_unit is not None:
                raise OrgFormationError(
                        "account {} is part of multiple organizational units, "
                        "at least {} and {}".format(
                        account.resource.logical_id, self.logical_id,
                        account.resource.organizational_unit))
            account.resource.organizational_unit = self.logical_id


class ServiceControlPolicyResource(Resource):

    def __init__(self, root, logical_id, resource):
        super().__init__(root, logical_id, resource)
        self.policy_name = self.properties['PolicyName']
        self.description = self.properties.get('Description', '')
        self.policy_document = self.properties['PolicyDocument']


class OrganizationRootResource(Resource):

    def __init__(self, root, logical_id, resource):
        super().__init__(root, logical_id, resource)
        self.tags = self.properties.get('Tags') or {}
        self.service_control_policies = []

    def resolve_refs(self):
        self.service_control_policies = self.resolve(
                self.properties.get('ServiceControlPolicies'),
                self.root.organization_section.service_control_policies)


RESOURCE_CLASSES = {
    MASTER_ACCOUNT: MasterAccountResource,
    ORGANIZATION_ROOT: OrganizationRootResource,
    ACCOUNT: AccountResource,
    ORGANIZATIONAL_UNIT: OrganizationalUnitResource,
    SERVICE_CONTROL_POLICY: ServiceControlPolicyResource,
}


def throw_for_duplicates(values, what):
    seen = set()
    for value in values:
        if value in seen:
            raise OrgFormationError("multiple {} found with value {}".format(what, value))
        seen.add(value)


class OrganizationSection(object):

    def __init__(self, log, root, contents):
        self.root = root
        self.master_account = None
        self.organization_root = None
        self.resources = []
        self.accounts = []
        self.organizational_units = []
        self.service_control_policies = []

        for logical_id, resource in (contents or {}).items():
            validate(log, properties_validator(log, resource['Type']),
                    resource.get('Properties') or {},
                    "resource {} ({})".format(logical_id, resource['Type']))
            self.resources.append(
                    RESOURCE_CLASSES[resource['Type']](root, logical_id, resource))

        for resource in self.resources:
            if isinstance(resource, MasterAccountResource):
                if self.master_account:
                    raise OrgFormationError(
                            "organization section cannot have multiple master account resources")
                self.master_account = resource
            elif isinstance(resource, OrganizationRootResource):
                if self.organization_root:
                    raise OrgFormationError(
                            "organization section cannot have multiple organization roots")
                self.organization_root = resource
            elif isinstance(resource, AccountResource):
                self.accounts.append(resource)
            elif isinstance(resource, OrganizationalUnitResource):
                self.organizational_units.append(resource)
            elif isinstance(resource, ServiceControlPolicyResource):
                self.service_control_policies.append(resource)

        all_accounts = self.all_accounts()
        throw_for_duplicates([a.account_id for a in all_accounts if a.account_id],
                'accounts with AccountId')
        throw_for_duplicates([a.root_email for a in all_accounts if a.root_email],
                'accounts with RootEmail')
        throw_for_duplicates([a.account_name for a in all_accounts],
                'accounts with AccountName')
        throw_for_duplicates([ou.organizational_unit_name for ou in self.organizational_units],
                'organizational units with OrganizationalUnitName')
        throw_for_duplicates([p.policy_name for p in self.service_control_policies],
                'service control policies with PolicyName')

    def all_accounts(self):
        if self.master_account:
            return self.accounts + [self.master_account]
        return list(self.accounts)

    def resolve_refs(self):
        for resource in self.resources:
            resource.resolve_refs()


class CloudFormationResource(Resource):

    def __init__(self, root, logical_id, resource):
        super().__init__(root, logical_id, resource)
        self.binding = resource.get('OrganizationBinding') or root.default_binding
        if not self.binding:
            raise OrgFormationError(
                    "Resource {} is missing OrganizationBinding attribute and no "
                    "top level DefaultOrganizationBinding found.".format(logical_id))
        self.regions = to_list(self.binding.get('Region')
                or root.default_binding_region)
        self.resource_hash = calculate_hash(resource)
        self.resource_for_template = {k: v for k, v in resource.items()
                if k not in ('OrganizationBinding', 'DependsOnAccount', 'DependsOnRegion')}
        self.normalized_bound_accounts = []
        self.depends_on_account = []
        self.depends_on_region = to_list(resource.get('DependsOnRegion'))

    def calculate_hash(self):
        return self.resource_hash

    def resolve_refs(self):
        self.normalized_bound_accounts = self.root.resolve_normalized_logical_account_ids(
                self.binding)
        depends_on = self.resolve(self.resource.get('DependsOnAccount'),
                self.root.organization_section.all_accounts())
        self.depends_on_account = [r.resource.logical_id for r in depends_on if r.resource]


class ResourcesSection(object):

    def __init__(self, root, contents):
        self.root = root
        self.resources = [CloudFormationResource(root, logical_id, resource)
                for logical_id, resource in (contents or {}).items()]

    def resolve_refs(self):
        for resource in self.resources:
            resource.resolve_refs()

    def enum_template_targets(self):
        """Group bound resources per (account, region)."""
        targets = {}
        for resource in self.resources:
            for account in resource.normalized_bound_accounts:
                for region in resource.regions:
                    key = (account, region)
                    if key not in targets:
                        targets[key] = ResourceTarget(account, region, [])
                    targets[key].resources.append(resource)
        return list(targets.values())


class TemplateRoot(object):

    @classmethod
    def from_file(cls, log, path):
        try:
            with open(path) as f:
                contents = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise OrgFormationError("unable to load file {}, reason: {}".format(path, e))
        return cls.from_contents(log, contents, os.path.dirname(path))

    @classmethod
    def from_contents(cls, log, contents, dirname='.'):
        if contents is None or not contents.strip():
            raise OrgFormationError('template contents is empty')
        try:
            obj = load_yaml(contents)
        except yaml.YAMLError as e:
            raise OrgFormationError("unable to parse template: {}".format(e))
        if not isinstance(obj, dict):
            raise OrgFormationError('template must be a mapping')
        return cls(log, obj, dirname)

    @classmethod
    def empty(cls, log):
        return cls(log, dict(
                AWSTemplateFormatVersion='2010-09-09-OC',
                Organization={}))

    def __init__(self, log, contents, dirname='.'):
        validate(log, template_validator(log), contents, 'template')
        self.contents = contents
        self.dirname = dirname
        self.source = json.dumps(contents)
        self.hash = calculate_hash(contents)
        self.default_binding = contents.get('DefaultOrganizationBinding')
        self.default_binding_region = contents.get('DefaultOrganizationBindingRegion')
        self.organization_section = OrganizationSection(log, self, contents['Organization'])
        self.resources_section = ResourcesSection(self, contents.get('Resources'))
        self.organization_section.resolve_refs()
        self.resources_section.resolve_refs()

    def resolve_normalized_logical_account_ids(self, binding):
        """
        Return the sorted logical ids of all accounts selected by an
        OrganizationBinding.
        """
        section = self.organization_section
        result = set()
        for item in to_list(binding.get('Account')):
            if item == '*':
                result.update(a.logical_id for a in section.accounts)
            elif isinstance(item, dict):
                result.add(self._find_account(item['Ref']).logical_id)
            else:
                result.add(self._find_account_by_id(str(item)).logical_id)
        for item in to_list(binding.get('OrganizationalUnit')):
            ou = self._find_organizational_unit(item)
            for account in ou.accounts:
                if account.resource:
                    result.add(account.resource.logical_id)
                else:
                    result.add(self._find_account_by_id(account.physical_id).logical_id)
        for item in to_list(binding.get('ExcludeAccount')):
            if isinstance(item, dict):
                result.discard(item['Ref'])
            else:
                result.discard(self._find_account_by_id(str(item)).logical_id)
        if binding.get('IncludeMasterAccount') and section.master_account:
            result.add(section.master_account.logical_id)
        return sorted(result)

    def _find_account(self, logical_id):
        for account in self.organization_section.all_accounts():
            if account.logical_id == logical_id:
                return account
        raise OrgFormationError("unable to find account with logical id {}".format(logical_id))

    def _find_account_by_id(self, account_id):
        for account in self.organization_section.all_accounts():
            if account.account_id == account_id:
                return account
        raise OrgFormationError("unable to find account with AccountId {}".format(account_id))

    def _find_organizational_unit(self, item):
        for ou in self.organization_section.organizational_units:
            if isinstance(item, dict) and ou.logical_id == item['Ref']:
                return ou
            if not isinstance(item, dict) and ou.organizational_unit_name == item:
                return ou
        raise OrgFormationError("unable to find organizational unit {}".format(item))
