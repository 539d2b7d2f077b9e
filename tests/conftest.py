import logging
import threading

import pytest
from botocore.exceptions import ClientError

from awsorgformation.state import PersistedState
from awsorgformation.template import TemplateRoot


MASTER_ACCOUNT_ID = '111111111111'


def client_error(code, message='error', operation='Operation'):
    return ClientError({'Error': {'Code': code, 'Message': message}}, operation)


class FakeOrganizationWriter(object):
    """Records every call.  Optionally fails calls listed in 'failures'."""

    def __init__(self, failures=None):
        self.calls = []
        self.failures = failures or {}
        self.lock = threading.Lock()

    def record(self, name, *args):
        with self.lock:
            self.calls.append((name,) + args)
        if name in self.failures:
            raise self.failures[name]

    def names(self):
        return [c[0] for c in self.calls]

    def ensure_root(self):
        self.record('ensure_root')
        return 'r-root'

    def create_policy(self, resource):
        self.record('create_policy', resource.logical_id)
        return 'p-' + resource.logical_id.lower()

    def update_policy(self, resource, physical_id):
        self.record('update_policy', resource.logical_id, physical_id)

    def delete_policy(self, physical_id):
        self.record('delete_policy', physical_id)

    def attach_policy(self, target_id, policy_id):
        self.record('attach_policy', target_id, policy_id)

    def detach_policy(self, target_id, policy_id):
        self.record('detach_policy', target_id, policy_id)

    def create_organizational_unit(self, resource):
        self.record('create_organizational_unit', resource.logical_id)
        return 'ou-' + resource.logical_id.lower()

    def update_organizational_unit(self, resource, physical_id):
        self.record('update_organizational_unit', resource.logical_id, physical_id)

    def delete_organizational_unit(self, physical_id):
        self.record('delete_organizational_unit', physical_id)

    def attach_account(self, parent_id, account_id):
        self.record('attach_account', parent_id, account_id)

    def detach_account(self, parent_id, account_id):
        self.record('detach_account', parent_id, account_id)

    def create_account(self, resource):
        self.record('create_account', resource.logical_id)
        return resource.account_id or '222222222222'

    def update_account(self, resource, physical_id):
        self.record('update_account', resource.logical_id, physical_id)


@pytest.fixture
def log():
    return logging.getLogger('awsorgformation.tests')


@pytest.fixture
def state(log):
    return PersistedState.create_empty(log, MASTER_ACCOUNT_ID)


@pytest.fixture
def writer():
    return FakeOrganizationWriter()


@pytest.fixture
def parse(log):
    def parse_template(text):
        return TemplateRoot.from_contents(log, text)
    return parse_template
