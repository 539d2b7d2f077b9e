import json
from unittest.mock import MagicMock

import pytest

from awsorgformation.cfn_binder import CfnTaskProvider, CloudFormationBinder
from awsorgformation.errors import OrgFormationError
from awsorgformation.runner import CfnTaskRunner


TEMPLATE = """
AWSTemplateFormatVersion: '2010-09-09-OC'
Organization:
  Master:
    Type: OC::ORG::MasterAccount
    Properties:
      AccountName: master
      AccountId: '111111111111'
  Dev:
    Type: OC::ORG::Account
    Properties:
      AccountName: dev
      RootEmail: dev@example.com
  Prod:
    Type: OC::ORG::Account
    Properties:
      AccountName: prod
      RootEmail: prod@example.com

Resources:
  Bucket:
    Type: AWS::S3::Bucket
    OrganizationBinding:
      Account: !Ref Dev
      Region: eu-west-1
"""

DEV_ID = '222222222222'
PROD_ID = '333333333333'


@pytest.fixture
def bound_state(state):
    for logical_id, physical_id in (('Dev', DEV_ID), ('Prod', PROD_ID)):
        state.set_binding(dict(type='OC::ORG::Account', logicalId=logical_id,
                physicalId=physical_id, lastCommittedHash='h'))
    return state


def binder_for(log, template, state, writer, stack_name='stack'):
    return CloudFormationBinder(log, stack_name, template, state,
            CfnTaskProvider(log, state, writer))


def test_new_target_is_update_or_create(log, bound_state, parse):
    bindings = binder_for(log, parse(TEMPLATE), bound_state, MagicMock()).enum_bindings()
    assert [(b.action, b.account_id, b.region) for b in bindings] == \
            [('UpdateOrCreate', DEV_ID, 'eu-west-1')]


def test_task_updates_stack_then_records_target(log, bound_state, parse):
    writer = MagicMock()
    tasks = binder_for(log, parse(TEMPLATE), bound_state, writer).enum_tasks()
    assert CfnTaskRunner.run_tasks(log, tasks, 'stack') == 0

    account_id, region, stack_name, body = writer.update_stack.call_args[0]
    assert (account_id, region, stack_name) == (DEV_ID, 'eu-west-1', 'stack')
    assert json.loads(body)['Resources'] == {'Bucket': {'Type': 'AWS::S3::Bucket'}}
    target = bound_state.get_target('stack', DEV_ID, 'eu-west-1')
    assert target['logicalAccountId'] == 'Dev'

    again = binder_for(log, parse(TEMPLATE), bound_state, writer)
    assert [b.action for b in again.enum_bindings()] == ['None']
    assert again.enum_tasks() == []


def test_changed_resource_updates_stack(log, bound_state, parse):
    writer = MagicMock()
    CfnTaskRunner.run_tasks(log, binder_for(log, parse(TEMPLATE), bound_state, writer)
            .enum_tasks(), 'stack')
    changed = parse(TEMPLATE + "    Properties:\n      BucketName: other\n")
    assert [b.action for b in binder_for(log, changed, bound_state, writer)
            .enum_bindings()] == ['UpdateOrCreate']


def test_stack_name_is_part_of_the_hash(log, bound_state, parse):
    writer = MagicMock()
    CfnTaskRunner.run_tasks(log, binder_for(log, parse(TEMPLATE), bound_state, writer)
            .enum_tasks(), 'stack')
    bound_state.set_target(dict(
            bound_state.get_target('stack', DEV_ID, 'eu-west-1'), stackName='other'))
    bindings = binder_for(log, parse(TEMPLATE), bound_state, writer, 'other').enum_bindings()
    assert [b.action for b in bindings] == ['UpdateOrCreate']


def test_removed_target_is_deleted(log, bound_state, parse):
    writer = MagicMock()
    bound_state.set_target(dict(stackName='stack', accountId=PROD_ID, region='us-east-1',
            logicalAccountId='Prod', lastCommittedHash='x'))
    tasks = binder_for(log, parse(TEMPLATE), bound_state, writer).enum_tasks()
    assert sorted(t.action for t in tasks) == ['Delete', 'UpdateOrCreate']

    CfnTaskRunner.run_tasks(log, tasks, 'stack')
    writer.delete_stack.assert_called_once_with(PROD_ID, 'us-east-1', 'stack')
    assert bound_state.get_target('stack', PROD_ID, 'us-east-1') is None


def test_depends_on_account(log, bound_state, parse):
    template = parse(TEMPLATE.replace("      Account: !Ref Dev\n",
            "      Account: [!Ref Dev, !Ref Prod]\n") + """
  Topic:
    Type: AWS::SNS::Topic
    OrganizationBinding:
      Account: !Ref Dev
      Region: eu-west-1
    DependsOnAccount: !Ref Prod
""")
    order = []
    writer = MagicMock()
    writer.update_stack.side_effect = lambda account_id, *args: order.append(account_id)
    tasks = binder_for(log, template, bound_state, writer).enum_tasks()
    dev = [t for t in tasks if t.account_id == DEV_ID][0]
    prod = [t for t in tasks if t.account_id == PROD_ID][0]
    assert dev.is_dependency(prod)
    assert not prod.is_dependency(dev)
    assert not dev.is_dependency(dev)

    CfnTaskRunner.run_tasks(log, tasks, 'stack', max_concurrent_tasks=5)
    assert order == [PROD_ID, DEV_ID]


def test_failed_update_is_not_recorded(log, bound_state, parse):
    writer = MagicMock()
    writer.update_stack.side_effect = RuntimeError('stack rollback')
    tasks = binder_for(log, parse(TEMPLATE), bound_state, writer).enum_tasks()
    assert CfnTaskRunner.run_tasks(log, tasks, 'stack', failed_tasks_tolerance=1) == 1
    assert bound_state.get_target('stack', DEV_ID, 'eu-west-1') is None


def test_unbound_account_is_an_error(log, state, parse):
    with pytest.raises(OrgFormationError):
        binder_for(log, parse(TEMPLATE), state, MagicMock()).enum_bindings()


def test_master_account_resolves_without_binding(log, state, parse):
    template = parse(TEMPLATE.replace("      Account: !Ref Dev\n",
            "      IncludeMasterAccount: true\n"))
    bindings = binder_for(log, template, state, MagicMock()).enum_bindings()
    assert [b.account_id for b in bindings] == ['111111111111']
