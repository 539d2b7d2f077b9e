"""
Mutating calls against AWS Organizations and CloudFormation.

Every method either returns the physical id of what it created or
nothing.  Provider errors propagate as botocore ClientError so the task
runner can retry throttling and report everything else.
"""

import json
import time

import boto3
from botocore.exceptions import ClientError

from awsorgformation.errors import OrgFormationError
from awsorgformation.utils import error_code, get_assume_role_credentials, lookup


DEFAULT_ORG_ACCESS_ROLE = 'OrganizationAccountAccessRole'
CREATE_ACCOUNT_POLL_INTERVAL = 5
CREATE_ACCOUNT_MAX_TRIES = 60


def policy_content(resource):
    document = resource.policy_document
    if isinstance(document, str):
        return document
    return json.dumps(document)


class AwsOrganizationWriter(object):

    def __init__(self, log, org_client, session=None,
            org_access_role=DEFAULT_ORG_ACCESS_ROLE):
        self.log = log
        self.org_client = org_client
        self.session = session or boto3.Session()
        self.org_access_role = org_access_role
        self.root_id = None

    def get_root_id(self):
        if self.root_id is None:
            roots = self.org_client.list_roots()['Roots']
            if len(roots) > 1:
                raise OrgFormationError("org_client.list_roots returned multiple roots.")
            self.root_id = roots[0]['Id']
        return self.root_id

    def ensure_root(self):
        """
        Return the organization root id.  Make sure service control
        policies are enabled in the root.
        """
        root = self.org_client.list_roots()['Roots'][0]
        self.root_id = root['Id']
        enabled = [p for p in root.get('PolicyTypes', [])
                if p['Type'] == 'SERVICE_CONTROL_POLICY' and p['Status'] == 'ENABLED']
        if not enabled:
            self.log.info("enabling service control policies in root %s" % self.root_id)
            self.org_client.enable_policy_type(
                    RootId=self.root_id, PolicyType='SERVICE_CONTROL_POLICY')
        return self.root_id

    # Service control policies

    def list_policies(self):
        response = self.org_client.list_policies(Filter='SERVICE_CONTROL_POLICY')
        policies = response['Policies']
        while 'NextToken' in response and response['NextToken']:
            response = self.org_client.list_policies(
                    Filter='SERVICE_CONTROL_POLICY', NextToken=response['NextToken'])
            policies += response['Policies']
        return policies

    def create_policy(self, resource):
        policy = lookup(self.list_policies(), 'Name', resource.policy_name)
        if policy:
            self.log.debug("policy '%s' already exists as %s. updating" %
                    (resource.policy_name, policy['Id']))
            self.update_policy(resource, policy['Id'])
            return policy['Id']
        response = self.org_client.create_policy(
                Content=policy_content(resource),
                Description=resource.description,
                Name=resource.policy_name,
                Type='SERVICE_CONTROL_POLICY')
        return response['Policy']['PolicySummary']['Id']

    def update_policy(self, resource, physical_id):
        self.org_client.update_policy(
                PolicyId=physical_id,
                Name=resource.policy_name,
                Description=resource.description,
                Content=policy_content(resource))

    def delete_policy(self, physical_id):
        try:
            self.org_client.delete_policy(PolicyId=physical_id)
        except ClientError as e:
            if error_code(e) not in ('PolicyNotFoundException', 'PolicyInUseException'):
                raise
            self.log.warning("policy %s not deleted: %s" % (physical_id, error_code(e)))

    def attach_policy(self, target_id, policy_id):
        try:
            self.org_client.attach_policy(PolicyId=policy_id, TargetId=target_id)
        except ClientError as e:
            if error_code(e) != 'DuplicatePolicyAttachmentException':
                raise
            self.log.debug("policy %s already attached to %s" % (policy_id, target_id))

    def detach_policy(self, target_id, policy_id):
        try:
            self.org_client.detach_policy(PolicyId=policy_id, TargetId=target_id)
        except ClientError as e:
            if error_code(e) not in ('PolicyNotAttachedException', 'PolicyNotFoundException'):
                raise
            self.log.debug("policy %s not attached to %s" % (policy_id, target_id))

    # Organizational units

    def create_organizational_unit(self, resource):
        parent_id = self.get_root_id()
        response = self.org_client.list_organizational_units_for_parent(ParentId=parent_id)
        child_ou = response['OrganizationalUnits']
        while 'NextToken' in response and response['NextToken']:
            response = self.org_client.list_organizational_units_for_parent(
                    ParentId=parent_id, NextToken=response['NextToken'])
            child_ou += response['OrganizationalUnits']
        ou_id = lookup(child_ou, 'Name', resource.organizational_unit_name, 'Id')
        if ou_id:
            self.log.debug("organizational unit '%s' already exists as %s" %
                    (resource.organizational_unit_name, ou_id))
            return ou_id
        response = self.org_client.create_organizational_unit(
                ParentId=parent_id, Name=resource.organizational_unit_name)
        return response['OrganizationalUnit']['Id']

    def update_organizational_unit(self, resource, physical_id):
        self.org_client.update_organizational_unit(
                OrganizationalUnitId=physical_id,
                Name=resource.organizational_unit_name)

    def delete_organizational_unit(self, physical_id):
        """Move any remaining accounts back to the root, then delete."""
        root_id = self.get_root_id()
        try:
            response = self.org_client.list_accounts_for_parent(ParentId=physical_id)
            accounts = response['Accounts']
            while 'NextToken' in response and response['NextToken']:
                response = self.org_client.list_accounts_for_parent(
                        ParentId=physical_id, NextToken=response['NextToken'])
                accounts += response['Accounts']
            for account in accounts:
                self.org_client.move_account(
                        AccountId=account['Id'],
                        SourceParentId=physical_id,
                        DestinationParentId=root_id)
            self.org_client.delete_organizational_unit(OrganizationalUnitId=physical_id)
        except ClientError as e:
            if error_code(e) not in ('OrganizationalUnitNotFoundException',
                    'ParentNotFoundException'):
                raise
            self.log.warning("organizational unit %s not found" % physical_id)

    # Accounts

    def get_parent_id(self, account_id):
        parents = self.org_client.list_parents(ChildId=account_id)['Parents']
        if len(parents) != 1:
            raise OrgFormationError("account '%s' has more than one parent: %s" %
                    (account_id, parents))
        return parents[0]['Id']

    def attach_account(self, parent_id, account_id):
        source_parent_id = self.get_parent_id(account_id)
        if source_parent_id == parent_id:
            self.log.debug("account %s already has parent %s" % (account_id, parent_id))
            return
        self.org_client.move_account(
                AccountId=account_id,
                SourceParentId=source_parent_id,
                DestinationParentId=parent_id)

    def detach_account(self, parent_id, account_id):
        """Move the account back to the root if it still lives in 'parent_id'."""
        source_parent_id = self.get_parent_id(account_id)
        if source_parent_id != parent_id:
            self.log.debug("account %s no longer in %s" % (account_id, parent_id))
            return
        self.org_client.move_account(
                AccountId=account_id,
                SourceParentId=source_parent_id,
                DestinationParentId=self.get_root_id())

    def list_accounts(self):
        response = self.org_client.list_accounts()
        accounts = response['Accounts']
        while 'NextToken' in response and response['NextToken']:
            response = self.org_client.list_accounts(NextToken=response['NextToken'])
            accounts += response['Accounts']
        return accounts

    def create_account(self, resource):
        """
        Return the id of the account declared by 'resource'.  An account
        already in the organization (same id or same root email) is
        adopted, otherwise a new account is created.
        """
        for account in self.list_accounts():
            if (account['Id'] == resource.account_id
                    or (resource.root_email and account.get('Email') == resource.root_email)):
                self.log.debug("account '%s' already in organization as %s" %
                        (resource.account_name, account['Id']))
                self.update_account(resource, account['Id'])
                return account['Id']
        if not resource.root_email:
            raise OrgFormationError("account %s with AccountId %s is not part of the "
                    "organization and has no RootEmail to create it with" %
                    (resource.logical_id, resource.account_id))

        self.log.info("creating account '%s'" % resource.account_name)
        response = self.org_client.create_account(
                AccountName=resource.account_name, Email=resource.root_email)
        create_id = response['CreateAccountStatus']['Id']
        self.log.debug("CreateAccountStatus Id: %s" % create_id)
        account_id = self.wait_for_account_creation(create_id, resource.account_name)
        self.update_account(resource, account_id)
        return account_id

    def wait_for_account_creation(self, create_id, account_name):
        counter = 0
        while counter < CREATE_ACCOUNT_MAX_TRIES:
            creation = self.org_client.describe_create_account_status(
                    CreateAccountRequestId=create_id)['CreateAccountStatus']
            if creation['State'] == 'SUCCEEDED':
                self.log.info("account creation succeeded for '%s'" % account_name)
                return creation['AccountId']
            if creation['State'] == 'FAILED':
                raise OrgFormationError("account creation failed for '%s': %s" %
                        (account_name, creation.get('FailureReason')))
            self.log.debug("account creation in progress for '%s'" % account_name)
            time.sleep(CREATE_ACCOUNT_POLL_INTERVAL)
            counter += 1
        raise OrgFormationError("account creation still pending for '%s'" % account_name)

    def update_account(self, resource, account_id):
        self.update_tags(account_id, resource.tags)
        self.update_alias(account_id, resource.alias)

    def update_tags(self, account_id, tags):
        response = self.org_client.list_tags_for_resource(ResourceId=account_id)
        current = {t['Key']: t['Value'] for t in response['Tags']}
        tags = {str(k): str(v) for k, v in (tags or {}).items()}
        removed = [k for k in current if k not in tags]
        if removed:
            self.org_client.untag_resource(ResourceId=account_id, TagKeys=removed)
        changed = {k: v for k, v in tags.items() if current.get(k) != v}
        if changed:
            self.org_client.tag_resource(ResourceId=account_id,
                    Tags=[dict(Key=k, Value=v) for k, v in changed.items()])

    def update_alias(self, account_id, alias):
        credentials = get_assume_role_credentials(account_id, self.org_access_role,
                session=self.session)
        iam_client = self.session.client('iam', **credentials)
        aliases = iam_client.list_account_aliases()['AccountAliases']
        current = aliases[0] if aliases else None
        if current == alias:
            return
        if current:
            self.log.info("removing account alias '%s' from account %s" % (current, account_id))
            iam_client.delete_account_alias(AccountAlias=current)
        if alias:
            self.log.info("setting account alias to '%s' for account %s" % (alias, account_id))
            iam_client.create_account_alias(AccountAlias=alias)


class AwsStackWriter(object):

    def __init__(self, log, session=None, org_access_role=DEFAULT_ORG_ACCESS_ROLE):
        self.log = log
        self.session = session or boto3.Session()
        self.org_access_role = org_access_role

    def cfn_client(self, account_id, region):
        credentials = get_assume_role_credentials(account_id, self.org_access_role,
                region_name=region, session=self.session)
        return self.session.client('cloudformation', **credentials)

    def describe_stack(self, client, stack_name):
        try:
            return client.describe_stacks(StackName=stack_name)['Stacks'][0]
        except ClientError as e:
            if 'does not exist' in str(e):
                return None
            raise

    def update_stack(self, account_id, region, stack_name, template_body):
        client = self.cfn_client(account_id, region)
        stack = self.describe_stack(client, stack_name)
        if stack is not None and stack['StackStatus'] == 'ROLLBACK_COMPLETE':
            self.log.info("stack %s in %s/%s is in ROLLBACK_COMPLETE, recreating" %
                    (stack_name, account_id, region))
            client.delete_stack(StackName=stack_name)
            client.get_waiter('stack_delete_complete').wait(StackName=stack_name)
            stack = None
        args = dict(
                StackName=stack_name,
                TemplateBody=template_body,
                Capabilities=['CAPABILITY_NAMED_IAM', 'CAPABILITY_IAM', 'CAPABILITY_AUTO_EXPAND'])
        if stack is None:
            client.create_stack(**args)
            client.get_waiter('stack_create_complete').wait(StackName=stack_name)
            return
        try:
            client.update_stack(**args)
        except ClientError as e:
            if 'No updates are to be performed' in str(e):
                self.log.debug("stack %s in %s/%s is up to date" %
                        (stack_name, account_id, region))
                return
            raise
        client.get_waiter('stack_update_complete').wait(StackName=stack_name)

    def delete_stack(self, account_id, region, stack_name):
        client = self.cfn_client(account_id, region)
        if self.describe_stack(client, stack_name) is None:
            self.log.debug("stack %s in %s/%s already deleted" % (stack_name, account_id, region))
            return
        client.delete_stack(StackName=stack_name)
        client.get_waiter('stack_delete_complete').wait(StackName=stack_name)
