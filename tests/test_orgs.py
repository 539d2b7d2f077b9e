from unittest.mock import MagicMock

import pytest

from awsorgformation import orgs
from awsorgformation.config import DEFAULTS
from awsorgformation.errors import FailureToleranceExceededError
from awsorgformation.state import FileStorageProvider, PersistedState
from awsorgformation.template import TemplateRoot

from conftest import MASTER_ACCOUNT_ID, FakeOrganizationWriter, client_error


ORGANIZATION = """
AWSTemplateFormatVersion: '2010-09-09-OC'
Organization:
  U:
    Type: OC::ORG::OrganizationalUnit
    Properties:
      OrganizationalUnitName: u
      ServiceControlPolicies: !Ref {policy}
  V:
    Type: OC::ORG::OrganizationalUnit
    Properties:
      OrganizationalUnitName: {name}
  P1:
    Type: OC::ORG::ServiceControlPolicy
    Properties:
      PolicyName: p1
      PolicyDocument: '{{}}'
  P2:
    Type: OC::ORG::ServiceControlPolicy
    Properties:
      PolicyName: p2
      PolicyDocument: '{{}}'
  P3:
    Type: OC::ORG::ServiceControlPolicy
    Properties:
      PolicyName: p3
      PolicyDocument: '{{}}'
"""


@pytest.fixture
def session():
    org_client = MagicMock()
    org_client.describe_organization.return_value = {
            'Organization': {'MasterAccountId': MASTER_ACCOUNT_ID}}
    session = MagicMock()
    session.client.return_value = org_client
    return session


@pytest.fixture
def state_path(tmp_path):
    return str(tmp_path / 'state.json')


@pytest.fixture
def config(state_path):
    return dict(DEFAULTS, state_file=state_path)


@pytest.fixture
def org_writer(monkeypatch):
    writer = FakeOrganizationWriter()
    monkeypatch.setattr(orgs, 'AwsOrganizationWriter', lambda *args: writer)
    return writer


@pytest.fixture
def run_update(log, tmp_path, config, session):
    def run(text, **options):
        path = tmp_path / 'organization.yml'
        path.write_text(text)
        orgs.update(log, {'<templateFile>': str(path)}, dict(config, **options), session)
        return TemplateRoot.from_contents(log, text)
    return run


def saved_state(log, state_path):
    return PersistedState.load(log, FileStorageProvider(state_path), MASTER_ACCOUNT_ID)


def test_update_records_template_and_hash(log, run_update, org_writer, state_path):
    template = run_update(ORGANIZATION.format(policy='P1', name='v'))
    state = saved_state(log, state_path)
    assert state.get_template_hash() == template.hash
    assert state.get_previous_template() == template.source
    assert state.get_binding('OC::ORG::OrganizationalUnit', 'U')['physicalId'] == 'ou-u'
    assert ('attach_policy', 'ou-u', 'p-p1') in org_writer.calls


def test_unchanged_template_does_no_work(run_update, org_writer):
    run_update(ORGANIZATION.format(policy='P1', name='v'))
    calls = list(org_writer.calls)
    run_update(ORGANIZATION.format(policy='P1', name='v'))
    assert org_writer.calls == calls


def test_partial_run_keeps_relation_baseline(log, run_update, org_writer, state_path):
    run_update(ORGANIZATION.format(policy='P1', name='v'))

    org_writer.failures = {'update_organizational_unit': client_error('AccessDeniedException')}
    second = run_update(ORGANIZATION.format(policy='P2', name='renamed'),
            failed_tasks_tolerance=5)
    assert ('attach_policy', 'ou-u', 'p-p2') in org_writer.calls
    assert ('detach_policy', 'ou-u', 'p-p1') in org_writer.calls
    state = saved_state(log, state_path)
    assert state.get_previous_template() == second.source
    assert state.get_template_hash() != second.hash

    org_writer.failures = {}
    org_writer.calls = []
    run_update(ORGANIZATION.format(policy='P3', name='renamed'))
    assert ('attach_policy', 'ou-u', 'p-p3') in org_writer.calls
    assert ('detach_policy', 'ou-u', 'p-p2') in org_writer.calls
    assert ('detach_policy', 'ou-u', 'p-p1') not in org_writer.calls


def test_empty_organization_records_hash(log, run_update, org_writer, state_path):
    template = run_update("AWSTemplateFormatVersion: '2010-09-09-OC'\nOrganization: {}\n")
    assert org_writer.calls == []
    assert saved_state(log, state_path).get_template_hash() == template.hash


@pytest.fixture
def memory_provider(log, monkeypatch):
    provider = MagicMock()
    provider.get.return_value = None

    def load_state(log, config, session, master_account_id):
        return PersistedState.load(log, provider, master_account_id)

    monkeypatch.setattr(orgs, 'load_state', load_state)
    return provider


def test_state_saved_once(run_update, org_writer, memory_provider):
    run_update(ORGANIZATION.format(policy='P1', name='v'))
    assert memory_provider.put.call_count == 1


def test_state_saved_once_when_tolerance_exceeded(run_update, memory_provider, monkeypatch):
    writer = FakeOrganizationWriter(
            failures={'create_policy': client_error('AccessDeniedException')})
    monkeypatch.setattr(orgs, 'AwsOrganizationWriter', lambda *args: writer)
    with pytest.raises(FailureToleranceExceededError):
        run_update(ORGANIZATION.format(policy='P1', name='v'))
    assert memory_provider.put.call_count == 1
    assert '"previousTemplate": ""' in memory_provider.put.call_args[0][0]


STACKS = """
AWSTemplateFormatVersion: '2010-09-09-OC'
Organization:
  Dev:
    Type: OC::ORG::Account
    Properties:
      AccountName: dev
      AccountId: '222222222222'
Resources:
  Bucket:
    Type: AWS::S3::Bucket
    OrganizationBinding:
      Account: !Ref Dev
      Region: [eu-west-1, us-east-1]
"""


def test_delete_stacks(log, config, session, state_path, monkeypatch):
    state = saved_state(log, state_path)
    state.set_previous_template(TemplateRoot.from_contents(log, STACKS).source)
    for region in ('eu-west-1', 'us-east-1'):
        state.set_target(dict(stackName='stack', accountId='222222222222', region=region,
                logicalAccountId='Dev', lastCommittedHash='h'))
    state.set_target(dict(stackName='other', accountId='222222222222', region='eu-west-1',
            logicalAccountId='Dev', lastCommittedHash='h'))
    state.save()
    writer = MagicMock()
    monkeypatch.setattr(orgs, 'AwsStackWriter', lambda *args: writer)

    orgs.delete_stacks(log, {'--stack-name': 'stack'}, config, session)
    assert sorted(c[0] for c in writer.delete_stack.call_args_list) == [
        ('222222222222', 'eu-west-1', 'stack'),
        ('222222222222', 'us-east-1', 'stack'),
    ]
    writer.update_stack.assert_not_called()
    assert saved_state(log, state_path).list_stacks() == ['other']
