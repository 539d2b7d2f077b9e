"""
Classify template entities against persisted state and turn the
classification into build tasks.
"""

from awsorgformation.errors import OrgFormationError
from awsorgformation.tasks import TaskGraph
from awsorgformation.template import (
    ACCOUNT,
    MASTER_ACCOUNT,
    ORGANIZATION_ROOT,
    ORGANIZATIONAL_UNIT,
    SERVICE_CONTROL_POLICY,
)


CREATE = 'Create'
UPDATE = 'Update'
DELETE = 'Delete'
NONE = 'None'


class Binding(object):

    def __init__(self, action, template=None, state=None, template_hash=None):
        self.action = action
        self.template = template
        self.state = state
        self.template_hash = template_hash

    @property
    def logical_id(self):
        if self.template is not None:
            return self.template.logical_id
        return self.state['logicalId']

    def __repr__(self):
        return '<Binding {} {}>'.format(self.action, self.logical_id)


def classify(resource, saved_binding):
    hash = resource.calculate_hash()
    if saved_binding is None:
        return Binding(CREATE, template=resource, template_hash=hash)
    if hash != saved_binding['lastCommittedHash']:
        return Binding(UPDATE, template=resource, state=saved_binding, template_hash=hash)
    return Binding(NONE, template=resource, state=saved_binding, template_hash=hash)


def get_binding(state, resource):
    """Classify one template entity by its logical id"""
    if resource is None:
        return None
    return classify(resource, state.get_binding(resource.type, resource.logical_id))


def get_binding_on_type(state, resource):
    """
    Classify a singleton entity.  The one stored binding of its type is
    used whatever its logical id.
    """
    if resource is None:
        return None
    saved_bindings = state.enum_bindings(resource.type)
    saved_binding = saved_bindings[0] if saved_bindings else None
    return classify(resource, saved_binding)


def enumerate_bindings(resource_type, resources, state):
    """
    Return one binding per template resource and one Delete binding per
    stored binding of 'resource_type' that no template resource claims.
    """
    result = [get_binding(state, resource) for resource in resources]
    logical_ids = set(resource.logical_id for resource in resources)
    for saved_binding in state.enum_bindings(resource_type):
        if saved_binding['logicalId'] not in logical_ids:
            result.append(Binding(DELETE, state=saved_binding))
    return result


class OrganizationBinding(object):

    def __init__(self, policies, accounts, organizational_units,
            master_account=None, organization_root=None):
        self.policies = policies
        self.accounts = accounts
        self.organizational_units = organizational_units
        self.master_account = master_account
        self.organization_root = organization_root


class OrganizationBinder(object):

    def __init__(self, log, template, state, task_provider):
        self.log = log
        self.template = template
        self.state = state
        self.task_provider = task_provider
        master_account = template.organization_section.master_account
        self.master_account_id = master_account.account_id if master_account else None
        if (state.master_account_id and self.master_account_id
                and state.master_account_id != self.master_account_id):
            raise OrgFormationError(
                    "state and template do not belong to the same organization: "
                    "state master account '{}', template master account '{}'".format(
                    state.master_account_id, self.master_account_id))

    def get_organization_binding(self):
        section = self.template.organization_section
        return OrganizationBinding(
                policies=enumerate_bindings(SERVICE_CONTROL_POLICY,
                        section.service_control_policies, self.state),
                accounts=enumerate_bindings(ACCOUNT, section.accounts, self.state),
                organizational_units=enumerate_bindings(ORGANIZATIONAL_UNIT,
                        section.organizational_units, self.state),
                master_account=self.singleton_binding(MASTER_ACCOUNT, section.master_account),
                organization_root=self.singleton_binding(ORGANIZATION_ROOT,
                        section.organization_root))

    def singleton_binding(self, resource_type, resource):
        if resource is not None:
            return get_binding_on_type(self.state, resource)
        saved_bindings = self.state.enum_bindings(resource_type)
        if saved_bindings:
            return Binding(DELETE, state=saved_bindings[0])
        return None

    def enum_build_tasks(self):
        provider = self.task_provider
        org = self.get_organization_binding()
        tasks = []

        for binding in org.policies:
            if binding.action == CREATE:
                tasks += provider.create_policy_create_tasks(binding.template, binding.template_hash)
            elif binding.action == UPDATE:
                tasks += provider.create_policy_update_tasks(binding.template,
                        binding.state['physicalId'], binding.template_hash)
            elif binding.action == DELETE:
                tasks += provider.create_policy_delete_tasks(binding.state)

        for binding in org.accounts:
            if binding.action == CREATE:
                tasks += provider.create_account_create_tasks(binding.template, binding.template_hash)
            elif binding.action == UPDATE:
                tasks += provider.create_account_update_tasks(binding.template,
                        binding.state['physicalId'], binding.template_hash)
            elif binding.action == DELETE:
                tasks += provider.create_account_delete_tasks(binding.state)

        for binding in org.organizational_units:
            if binding.action == CREATE:
                tasks += provider.create_organizational_unit_create_tasks(
                        binding.template, binding.template_hash)
            elif binding.action == UPDATE:
                tasks += provider.create_organizational_unit_update_tasks(binding.template,
                        binding.state['physicalId'], binding.template_hash)
            elif binding.action == DELETE:
                tasks += provider.create_organizational_unit_delete_tasks(binding.state)

        binding = org.master_account
        if binding is not None:
            if binding.action == CREATE:
                tasks += provider.create_account_create_tasks(binding.template, binding.template_hash)
            elif binding.action == UPDATE:
                tasks += provider.create_account_update_tasks(binding.template,
                        binding.state['physicalId'], binding.template_hash)
            elif binding.action == DELETE:
                tasks += provider.create_forget_resource_tasks(binding.state)

        binding = org.organization_root
        if binding is not None:
            if binding.action == CREATE:
                tasks += provider.create_root_create_tasks(binding.template, binding.template_hash)
            elif binding.action == UPDATE:
                tasks += provider.create_root_update_tasks(binding.template,
                        binding.state['physicalId'], binding.template_hash)
            elif binding.action == DELETE:
                tasks += provider.create_forget_resource_tasks(binding.state)

        self.log.debug("enumerated {} build tasks".format(len(tasks)))
        return tasks

    def build_task_graph(self):
        return TaskGraph(self.enum_build_tasks())
