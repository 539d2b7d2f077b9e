"""
Build tasks for reconciling the Organization section of a template.

Each classified binding is turned into a small group of tasks: one
creation (or update) task, one relation task per attached policy or
account, and a terminal CommitHash task which records the binding in
state once everything else for that entity succeeded.
"""

from collections import namedtuple

from awsorgformation.errors import OrgFormationError
from awsorgformation.template import (
    TemplateRoot,
    Reference,
    ACCOUNT,
    MASTER_ACCOUNT,
    ORGANIZATION_ROOT,
    SERVICE_CONTROL_POLICY,
)


CREATE = 'Create'
UPDATE = 'Update'
DELETE = 'Delete'
FORGET = 'Forget'
COMMIT_HASH = 'CommitHash'
ATTACH_POLICY = 'Attach Policy'
DETACH_POLICY = 'Detach Policy'
ATTACH_ACCOUNT = 'Attach Account'
DETACH_ACCOUNT = 'Detach Account'

SINGLETON_TYPES = (MASTER_ACCOUNT, ORGANIZATION_ROOT)


ResolvedIds = namedtuple('ResolvedIds', ['physical_ids', 'unresolved_resources', 'mapping'])


class BuildTask(object):
    """
    A node of the task graph.

    'perform' is called with the graph's results mapping (task id ->
    physical id).  A value it returns is stored in this task's result
    slot.  'dependent_tasks' and 'dependent_task_filter' are turned into
    the concrete 'dependencies' id set when the task is added to a
    TaskGraph.
    """

    def __init__(self, type, logical_id, action, perform,
            dependent_tasks=None, dependent_task_filter=None):
        self.type = type
        self.logical_id = logical_id
        self.action = action
        self.perform = perform
        self.dependent_tasks = list(dependent_tasks or [])
        self.dependent_task_filter = dependent_task_filter
        self.task_id = None
        self.graph = None
        self.dependencies = set()
        self.done = False
        self.failed = False
        self.running = False
        self.skipped = False

    @property
    def result(self):
        if self.graph is None:
            return None
        return self.graph.results.get(self.task_id)

    def is_dependency(self, other):
        return other.task_id in self.dependencies

    def run(self):
        value = self.perform(self.graph.results)
        if value is not None:
            self.graph.results[self.task_id] = value
        return value

    def __repr__(self):
        return '<BuildTask {}>'.format(self.task_id or
                '{}/{}/{}'.format(self.type, self.logical_id, self.action))


class TaskGraph(object):
    """
    All build tasks of a run.  Ids are assigned in enumeration order
    first, then every dependency list and filter is resolved against
    the complete task set.
    """

    def __init__(self, tasks):
        self.tasks = list(tasks)
        self.results = {}
        for n, task in enumerate(self.tasks):
            task.task_id = '{}:{}/{}/{}'.format(n, task.type, task.logical_id, task.action)
            task.graph = self
        for task in self.tasks:
            dependencies = set(t.task_id for t in task.dependent_tasks
                    if t.task_id is not None)
            if task.dependent_task_filter is not None:
                dependencies.update(t.task_id for t in self.tasks
                        if t is not task and task.dependent_task_filter(t))
            task.dependencies = dependencies

    def __iter__(self):
        return iter(self.tasks)

    def __len__(self):
        return len(self.tasks)


def physical_id_of(task):
    """Read the result slot of 'task' from a results mapping"""
    def getter(results):
        physical_id = results.get(task.task_id)
        if physical_id is None:
            raise OrgFormationError(
                    "no physical id produced by task {}".format(task.task_id))
        return physical_id
    return getter


def constant(physical_id):
    return lambda results: physical_id


class TaskProvider(object):

    def __init__(self, log, template, state, writer):
        self.log = log
        self.state = state
        self.writer = writer
        previous = state.get_previous_template()
        if previous:
            self.previous_template = TemplateRoot.from_contents(log, previous, template.dirname)
        else:
            self.previous_template = TemplateRoot.empty(log)

    def commit_hash_task(self, resource, hash, tasks, get_physical_id):
        state = self.state

        def perform(results):
            state.set_binding(dict(
                    type=resource.type,
                    logicalId=resource.logical_id,
                    lastCommittedHash=hash,
                    physicalId=get_physical_id(results)))
            if resource.type in SINGLETON_TYPES:
                # a renamed singleton replaces the binding stored under its old name
                for binding in state.enum_bindings(resource.type):
                    if binding['logicalId'] != resource.logical_id:
                        state.remove_binding(binding)

        return BuildTask(resource.type, resource.logical_id, COMMIT_HASH, perform,
                dependent_tasks=tasks)

    # Organization root

    def create_root_create_tasks(self, resource, hash):
        writer = self.writer
        create_task = BuildTask(resource.type, resource.logical_id, CREATE,
                lambda results: writer.ensure_root())
        tasks = [create_task]
        for policy in resource.service_control_policies:
            attach = self.attach_policy_task(resource, policy, physical_id_of(create_task))
            attach.dependent_tasks = [create_task]
            tasks.append(attach)
        return tasks + [self.commit_hash_task(resource, hash, tasks,
                physical_id_of(create_task))]

    def create_root_update_tasks(self, resource, physical_id, hash):
        previous = self.previous_template.organization_section.organization_root
        previous_policies = previous.service_control_policies if previous else []
        tasks = self.policy_relation_tasks(resource, physical_id,
                previous_policies, resource.service_control_policies)
        return tasks + [self.commit_hash_task(resource, hash, tasks, constant(physical_id))]

    # Service control policies

    def create_policy_create_tasks(self, resource, hash):
        writer = self.writer
        state = self.state

        def perform(results):
            physical_id = writer.create_policy(resource)
            state.set_binding(dict(
                    type=resource.type,
                    logicalId=resource.logical_id,
                    lastCommittedHash=hash,
                    physicalId=physical_id))
            return physical_id

        return [BuildTask(resource.type, resource.logical_id, CREATE, perform)]

    def create_policy_update_tasks(self, resource, physical_id, hash):
        writer = self.writer
        state = self.state

        def perform(results):
            writer.update_policy(resource, physical_id)
            state.set_binding(dict(
                    type=resource.type,
                    logicalId=resource.logical_id,
                    lastCommittedHash=hash,
                    physicalId=physical_id))

        return [BuildTask(resource.type, resource.logical_id, UPDATE, perform)]

    def create_policy_delete_tasks(self, binding):
        writer = self.writer
        state = self.state

        def perform(results):
            writer.delete_policy(binding['physicalId'])
            state.remove_binding(binding)

        # detaches and every other change go first
        return [BuildTask(binding['type'], binding['logicalId'], DELETE, perform,
                dependent_task_filter=lambda task: task.action != DELETE)]

    # Organizational units

    def create_organizational_unit_create_tasks(self, resource, hash):
        writer = self.writer
        create_task = BuildTask(resource.type, resource.logical_id, CREATE,
                lambda results: writer.create_organizational_unit(resource))
        tasks = [create_task]
        for policy in resource.service_control_policies:
            attach = self.attach_policy_task(resource, policy, physical_id_of(create_task))
            attach.dependent_tasks = [create_task]
            tasks.append(attach)
        for account in resource.accounts:
            attach = self.attach_account_task(resource, account, physical_id_of(create_task))
            attach.dependent_tasks = [create_task]
            tasks.append(attach)
        return tasks + [self.commit_hash_task(resource, hash, tasks,
                physical_id_of(create_task))]

    def create_organizational_unit_update_tasks(self, resource, physical_id, hash):
        writer = self.writer
        tasks = []
        previous = self.find_previous(self.previous_template.organization_section.organizational_units,
                resource.logical_id)
        if previous is None or previous.organizational_unit_name != resource.organizational_unit_name:
            tasks.append(BuildTask(resource.type, resource.logical_id, UPDATE,
                    lambda results: writer.update_organizational_unit(resource, physical_id)))

        tasks += self.policy_relation_tasks(resource, physical_id,
                previous.service_control_policies if previous else [],
                resource.service_control_policies)

        previous_accounts = self.resolve_ids(previous.accounts if previous else [])
        current_accounts = self.resolve_ids(resource.accounts)
        for account_id in current_accounts.physical_ids:
            if account_id not in previous_accounts.physical_ids:
                tasks.append(self.attach_account_task(resource,
                        current_accounts.mapping[account_id], constant(physical_id)))
        for account in current_accounts.unresolved_resources:
            tasks.append(self.attach_account_task(resource,
                    self.reference_to(account), constant(physical_id)))
        for account_id in previous_accounts.physical_ids:
            if account_id not in current_accounts.physical_ids:
                tasks.append(self.detach_account_task(resource,
                        previous_accounts.mapping[account_id], physical_id))

        return tasks + [self.commit_hash_task(resource, hash, tasks, constant(physical_id))]

    def create_organizational_unit_delete_tasks(self, binding):
        writer = self.writer
        state = self.state

        def perform(results):
            writer.delete_organizational_unit(binding['physicalId'])
            state.remove_binding(binding)

        return [BuildTask(binding['type'], binding['logicalId'], DELETE, perform)]

    # Accounts

    def create_account_create_tasks(self, resource, hash):
        writer = self.writer
        create_task = BuildTask(resource.type, resource.logical_id, CREATE,
                lambda results: writer.create_account(resource))
        tasks = [create_task]
        for policy in resource.service_control_policies:
            attach = self.attach_policy_task(resource, policy, physical_id_of(create_task))
            attach.dependent_tasks = [create_task]
            tasks.append(attach)
        return tasks + [self.commit_hash_task(resource, hash, tasks,
                physical_id_of(create_task))]

    def create_account_update_tasks(self, resource, physical_id, hash):
        writer = self.writer
        tasks = []
        section = self.previous_template.organization_section
        previous = self.find_previous(section.accounts, resource.logical_id)
        if previous is None and resource.type == MASTER_ACCOUNT:
            previous = section.master_account
        if (previous is None
                or previous.alias != resource.alias
                or previous.account_name != resource.account_name
                or previous.tags != resource.tags):
            tasks.append(BuildTask(resource.type, resource.logical_id, UPDATE,
                    lambda results: writer.update_account(resource, physical_id)))

        tasks += self.policy_relation_tasks(resource, physical_id,
                previous.service_control_policies if previous else [],
                resource.service_control_policies)

        return tasks + [self.commit_hash_task(resource, hash, tasks, constant(physical_id))]

    def create_account_delete_tasks(self, binding):
        """Accounts are never closed.  Removing one only forgets its binding."""
        return self.create_forget_resource_tasks(binding)

    def create_forget_resource_tasks(self, binding):
        state = self.state
        return [BuildTask(binding['type'], binding['logicalId'], FORGET,
                lambda results: state.remove_binding(binding))]

    # Relations

    def policy_relation_tasks(self, resource, physical_id, previous_policies, current_policies):
        """Attach and detach tasks for the difference of two policy reference lists"""
        tasks = []
        previous = self.resolve_ids(previous_policies)
        current = self.resolve_ids(current_policies)
        for policy_id in current.physical_ids:
            if policy_id not in previous.physical_ids:
                tasks.append(self.attach_policy_task(resource,
                        current.mapping[policy_id], constant(physical_id)))
        for policy in current.unresolved_resources:
            tasks.append(self.attach_policy_task(resource,
                    self.reference_to(policy), constant(physical_id)))
        for policy_id in previous.physical_ids:
            if policy_id not in current.physical_ids:
                tasks.append(self.detach_policy_task(resource,
                        previous.mapping[policy_id], physical_id))
        return tasks

    def attach_policy_task(self, resource, policy, get_target_id):
        writer = self.writer

        def perform(results):
            policy_id = self.reference_physical_id(task, policy, results)
            writer.attach_policy(get_target_id(results), policy_id)

        task = BuildTask(resource.type, resource.logical_id,
                '{} ({})'.format(ATTACH_POLICY, self.identifier(policy)), perform)
        if policy.resource and self.state.get_binding(SERVICE_CONTROL_POLICY,
                policy.resource.logical_id) is None:
            logical_id = policy.resource.logical_id
            # a new policy may only fit once other policies are detached
            task.dependent_task_filter = lambda t: (
                    (t.type == SERVICE_CONTROL_POLICY
                        and t.logical_id == logical_id
                        and t.action == CREATE)
                    or t.action.startswith(DETACH_POLICY))
        return task

    def detach_policy_task(self, resource, policy, target_id):
        writer = self.writer
        return BuildTask(resource.type, resource.logical_id,
                '{} ({})'.format(DETACH_POLICY, self.identifier(policy)),
                lambda results: writer.detach_policy(target_id, policy.physical_id))

    def attach_account_task(self, resource, account, get_target_id):
        writer = self.writer

        def perform(results):
            account_id = self.reference_physical_id(task, account, results)
            writer.attach_account(get_target_id(results), account_id)

        task = BuildTask(resource.type, resource.logical_id,
                '{} ({})'.format(ATTACH_ACCOUNT, self.identifier(account)), perform)
        self.wait_for_account_create(task, account)
        return task

    def detach_account_task(self, resource, account, target_id):
        writer = self.writer

        def perform(results):
            account_id = self.reference_physical_id(task, account, results)
            writer.detach_account(target_id, account_id)

        task = BuildTask(resource.type, resource.logical_id,
                '{} ({})'.format(DETACH_ACCOUNT, self.identifier(account)), perform)
        self.wait_for_account_create(task, account)
        return task

    def wait_for_account_create(self, task, account):
        if account.resource is None:
            return
        account_type = account.resource.type
        logical_id = account.resource.logical_id
        if self.stored_binding(account_type, logical_id) is None:
            task.dependent_task_filter = lambda t: (
                    t.type in (ACCOUNT, MASTER_ACCOUNT)
                    and t.logical_id == logical_id
                    and t.action == CREATE)

    def reference_physical_id(self, task, reference, results):
        """
        Physical id of a referenced entity at perform time: the literal
        id, the result of the Create task 'task' waits for, or the id
        bound in state.
        """
        if reference.physical_id is not None:
            return reference.physical_id
        resource = reference.resource
        for other in task.graph:
            if (other.task_id in task.dependencies
                    and other.type == resource.type
                    and other.logical_id == resource.logical_id
                    and other.action == CREATE
                    and results.get(other.task_id)):
                return results[other.task_id]
        return self.bound_physical_id(resource.type, resource.logical_id)

    def stored_binding(self, resource_type, logical_id):
        binding = self.state.get_binding(resource_type, logical_id)
        if binding is None and resource_type in SINGLETON_TYPES:
            bindings = self.state.enum_bindings(resource_type)
            binding = bindings[0] if bindings else None
        return binding

    def bound_physical_id(self, resource_type, logical_id):
        binding = self.stored_binding(resource_type, logical_id)
        if binding is None:
            raise OrgFormationError("unable to find binding for {} {}".format(
                    resource_type, logical_id))
        return binding['physicalId']

    def resolve_ids(self, references):
        """
        Partition references into the sorted physical ids known now and
        the template resources that have no binding yet.  'mapping' maps
        every known physical id back to its reference.
        """
        physical_ids = []
        unresolved_resources = []
        mapping = {}
        for reference in references:
            if reference.physical_id:
                physical_ids.append(reference.physical_id)
                mapping[reference.physical_id] = reference
                continue
            resource = reference.resource
            binding = self.stored_binding(resource.type, resource.logical_id)
            if binding is None:
                unresolved_resources.append(resource)
            else:
                physical_ids.append(binding['physicalId'])
                mapping[binding['physicalId']] = reference._replace(
                        physical_id=binding['physicalId'])
        return ResolvedIds(sorted(physical_ids), unresolved_resources, mapping)

    @staticmethod
    def reference_to(resource):
        return Reference(None, resource)

    @staticmethod
    def identifier(reference):
        if reference.resource is not None:
            return reference.resource.logical_id
        return reference.physical_id

    @staticmethod
    def find_previous(resources, logical_id):
        for resource in resources:
            if resource.logical_id == logical_id:
                return resource
        return None
