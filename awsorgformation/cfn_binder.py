"""
Bind the CloudFormation resources of a template to stack targets.

A target is the composite key (account, region, stack name).  All
resources bound to one account/region pair end up in one stack, and a
change to any of them produces a single update task for that stack.
"""

import json

from awsorgformation.errors import OrgFormationError
from awsorgformation.utils import calculate_hash


UPDATE_OR_CREATE = 'UpdateOrCreate'
DELETE = 'Delete'
NONE = 'None'

# Template sections copied verbatim into every stack template
SHARED_SECTIONS = ('Parameters', 'Conditions', 'Mappings', 'Metadata')


class CfnTemplate(object):
    """The stack template for the resources bound to one target"""

    def __init__(self, target, template):
        self.target = target
        self.template = template

    def as_dict(self):
        body = dict(AWSTemplateFormatVersion='2010-09-09')
        description = self.template.contents.get('Description')
        if description:
            body['Description'] = description
        for section in SHARED_SECTIONS:
            if self.template.contents.get(section):
                body[section] = self.template.contents[section]
        body['Resources'] = {r.logical_id: r.resource_for_template
                for r in self.target.resources}
        return body

    def create_template_body(self):
        return json.dumps(self.as_dict(), indent=2, default=str)

    def calculate_hash(self, stack_name):
        shared = {s: self.template.contents.get(s) for s in SHARED_SECTIONS}
        return calculate_hash(dict(
                stackName=stack_name,
                resources=sorted(r.calculate_hash() for r in self.target.resources),
                shared=calculate_hash(shared)))


class CfnBinding(object):

    def __init__(self, action, stack_name, account_id, region,
            logical_account_id=None, template=None, template_hash=None, state=None,
            account_dependencies=None, region_dependencies=None):
        self.action = action
        self.stack_name = stack_name
        self.account_id = account_id
        self.region = region
        self.logical_account_id = logical_account_id
        self.template = template
        self.template_hash = template_hash
        self.state = state
        self.account_dependencies = account_dependencies or []
        self.region_dependencies = region_dependencies or []

    def __repr__(self):
        return '<CfnBinding {} {} {}/{}>'.format(
                self.action, self.stack_name, self.account_id, self.region)


class CfnTask(object):

    def __init__(self, action, stack_name, account_id, region, perform, binding=None):
        self.action = action
        self.stack_name = stack_name
        self.account_id = account_id
        self.region = region
        self.perform = perform
        self.binding = binding
        self.done = False
        self.failed = False
        self.running = False
        self.skipped = False

    def is_dependency(self, other):
        if other is self or self.binding is None:
            return False
        return (other.account_id in self.binding.account_dependencies
                or other.region in self.binding.region_dependencies)

    def run(self):
        return self.perform()

    def __repr__(self):
        return '<CfnTask {} {} {}/{}>'.format(
                self.action, self.stack_name, self.account_id, self.region)


class CfnTaskProvider(object):

    def __init__(self, log, state, writer):
        self.log = log
        self.state = state
        self.writer = writer

    def create_update_template_task(self, binding):
        writer = self.writer
        state = self.state

        def perform():
            writer.update_stack(binding.account_id, binding.region, binding.stack_name,
                    binding.template.create_template_body())
            state.set_target(dict(
                    accountId=binding.account_id,
                    region=binding.region,
                    stackName=binding.stack_name,
                    logicalAccountId=binding.logical_account_id,
                    lastCommittedHash=binding.template_hash))

        return CfnTask(binding.action, binding.stack_name, binding.account_id,
                binding.region, perform, binding)

    def create_delete_template_task(self, binding):
        writer = self.writer
        state = self.state

        def perform():
            writer.delete_stack(binding.account_id, binding.region, binding.stack_name)
            state.remove_target(binding.stack_name, binding.account_id, binding.region)

        return CfnTask(binding.action, binding.stack_name, binding.account_id,
                binding.region, perform)


class CloudFormationBinder(object):

    def __init__(self, log, stack_name, template, state, task_provider):
        self.log = log
        self.stack_name = stack_name
        self.template = template
        self.state = state
        self.task_provider = task_provider
        master_account = template.organization_section.master_account
        master_account_id = master_account.account_id if master_account else None
        if (state.master_account_id and master_account_id
                and state.master_account_id != master_account_id):
            raise OrgFormationError('state and template do not belong to the same organization')

    def physical_account_id(self, logical_account_id):
        binding = self.state.get_account_binding(logical_account_id)
        if binding is None:
            master_account = self.template.organization_section.master_account
            if master_account and master_account.logical_id == logical_account_id:
                return self.state.master_account_id
            raise OrgFormationError(
                    "expected to find an account binding for account {} in state. "
                    "Is your organization up to date?".format(logical_account_id))
        return binding['physicalId']

    def enum_bindings(self):
        result = []
        keys_in_template = set()
        resources_section = self.template.resources_section
        targets = resources_section.enum_template_targets()
        if resources_section.resources and not targets:
            self.log.warning("template does not contain any resource with binding. "
                    "bindings need both Account(s) and Region(s)")

        for target in targets:
            account_id = self.physical_account_id(target.account_logical_id)
            key = (account_id, target.region)
            keys_in_template.add(key)
            cfn_template = CfnTemplate(target, self.template)
            template_hash = cfn_template.calculate_hash(self.stack_name)
            stored = self.state.get_target(self.stack_name, account_id, target.region)

            account_dependencies = set()
            region_dependencies = set()
            for resource in target.resources:
                for logical_id in resource.depends_on_account:
                    account_dependencies.add(self.physical_account_id(logical_id))
                region_dependencies.update(resource.depends_on_region)

            action = NONE
            if stored is None or stored.get('lastCommittedHash') != template_hash:
                action = UPDATE_OR_CREATE
            result.append(CfnBinding(action, self.stack_name, account_id, target.region,
                    logical_account_id=target.account_logical_id,
                    template=cfn_template,
                    template_hash=template_hash,
                    state=stored,
                    account_dependencies=sorted(account_dependencies),
                    region_dependencies=sorted(region_dependencies)))

        for stored in self.state.enum_targets(self.stack_name):
            if (stored['accountId'], stored['region']) not in keys_in_template:
                result.append(CfnBinding(DELETE, self.stack_name,
                        stored['accountId'], stored['region'],
                        logical_account_id=stored.get('logicalAccountId'),
                        state=stored))
        return result

    def enum_tasks(self):
        tasks = []
        for binding in self.enum_bindings():
            if binding.action == UPDATE_OR_CREATE:
                tasks.append(self.task_provider.create_update_template_task(binding))
            elif binding.action == DELETE:
                tasks.append(self.task_provider.create_delete_template_task(binding))
        return tasks
