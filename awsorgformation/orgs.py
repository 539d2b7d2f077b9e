#!/usr/bin/env python


"""Reconcile an AWS Organization and its CloudFormation stacks with a template.

Usage:
  org-formation update <templateFile> [--config FILE]
                                      [--state-bucket-name NAME]
                                      [--state-object KEY]
                                      [--state-file PATH]
                                      [--profile PROFILE]
                                      [--org-access-role ROLE]
                                      [--max-concurrent-tasks N]
                                      [--failed-tasks-tolerance N]
                                      [-q] [-d] [--boto-log]
  org-formation update-stacks <templateFile> --stack-name NAME
                                      [--config FILE]
                                      [--state-bucket-name NAME]
                                      [--state-object KEY]
                                      [--state-file PATH]
                                      [--profile PROFILE]
                                      [--org-access-role ROLE]
                                      [--max-concurrent-tasks N]
                                      [--failed-tasks-tolerance N]
                                      [-q] [-d] [--boto-log]
  org-formation delete-stacks --stack-name NAME [--config FILE]
                                      [--state-bucket-name NAME]
                                      [--state-object KEY]
                                      [--state-file PATH]
                                      [--profile PROFILE]
                                      [--org-access-role ROLE]
                                      [--max-concurrent-tasks N]
                                      [--failed-tasks-tolerance N]
                                      [-q] [-d] [--boto-log]
  org-formation (--help|--version)

Modes of operation:
  update          Update the organization resources declared in <templateFile>.
  update-stacks   Deploy the CloudFormation resources of <templateFile> as
                  stack NAME to every bound account and region.
  delete-stacks   Delete stack NAME from every account and region it was
                  deployed to.

Options:
  -h, --help                    Show this help message and exit.
  -V, --version                 Display version info and exit.
  --config FILE                 Config file in yaml format.
  --stack-name NAME             Name of the stack deployed to each target.
  --state-bucket-name NAME      S3 bucket holding the state object.
  --state-object KEY            Key of the state object in the state bucket.
  --state-file PATH             Keep state in a local file instead of S3.
  --profile PROFILE             AWS profile to use.
  --org-access-role ROLE        IAM role for traversing accounts in the Org.
  --max-concurrent-tasks N      Number of tasks run concurrently.
  --failed-tasks-tolerance N    Number of failed tasks tolerated before aborting.
  -q, --quiet                   Repress log output.
  -d, --debug                   Increase log level to 'DEBUG'.
  --boto-log                    Include botocore and boto3 logs in log stream.

"""


import sys
import json

import boto3
from botocore.exceptions import ClientError
from docopt import docopt

import awsorgformation
from awsorgformation.binder import OrganizationBinder
from awsorgformation.cfn_binder import CfnTaskProvider, CloudFormationBinder
from awsorgformation.config import get_state_bucket_name, load_config
from awsorgformation.errors import OrgFormationError
from awsorgformation.runner import CfnTaskRunner, OrganizationTaskRunner
from awsorgformation.state import FileStorageProvider, PersistedState, S3StorageProvider
from awsorgformation.tasks import TaskProvider
from awsorgformation.template import TemplateRoot
from awsorgformation.utils import get_logger
from awsorgformation.writer import AwsOrganizationWriter, AwsStackWriter


def get_master_account_id(org_client):
    return org_client.describe_organization()['Organization']['MasterAccountId']


def load_state(log, config, session, master_account_id):
    if config['state_file']:
        provider = FileStorageProvider(config['state_file'])
    else:
        provider = S3StorageProvider(
                get_state_bucket_name(config, master_account_id),
                config['state_object'],
                session=session)
    return PersistedState.load(log, provider, master_account_id)


def update(log, args, config, session):
    """
    Reconcile the Organization section of the template.  State is saved
    exactly once, whatever the outcome of the tasks.  The template
    becomes the previous template whenever the runner completes, its
    hash only when no task failed.
    """
    template = TemplateRoot.from_file(log, args['<templateFile>'])
    org_client = session.client('organizations')
    state = load_state(log, config, session, get_master_account_id(org_client))
    if state.get_template_hash() == template.hash:
        log.info("organization up to date, no work to be done.")
        return

    writer = AwsOrganizationWriter(log, org_client, session, config['org_access_role'])
    task_provider = TaskProvider(log, template, state, writer)
    binder = OrganizationBinder(log, template, state, task_provider)
    graph = binder.build_task_graph()

    failed = None
    try:
        if len(graph):
            failed = OrganizationTaskRunner.run_tasks(log, graph,
                    config['max_concurrent_tasks'], config['failed_tasks_tolerance'])
        else:
            log.info("organization up to date, no work to be done.")
            failed = 0
    finally:
        if failed is not None:
            state.set_previous_template(template.source)
        if failed == 0:
            state.put_template_hash(template.hash)
        state.save()
    if failed:
        log.warning("{} tasks failed within tolerance {}".format(
                failed, config['failed_tasks_tolerance']))


def run_stack_tasks(log, config, state, stack_name, tasks):
    if not tasks:
        log.info("stack {} already up to date.".format(stack_name))
        return
    try:
        CfnTaskRunner.run_tasks(log, tasks, stack_name,
                config['max_concurrent_tasks'], config['failed_tasks_tolerance'])
    finally:
        state.save()


def update_stacks(log, args, config, session):
    stack_name = args['--stack-name']
    template = TemplateRoot.from_file(log, args['<templateFile>'])
    org_client = session.client('organizations')
    state = load_state(log, config, session, get_master_account_id(org_client))

    writer = AwsStackWriter(log, session, config['org_access_role'])
    task_provider = CfnTaskProvider(log, state, writer)
    binder = CloudFormationBinder(log, stack_name, template, state, task_provider)
    run_stack_tasks(log, config, state, stack_name, binder.enum_tasks())


def delete_stacks(log, args, config, session):
    """
    Delete every deployed instance of a stack.  Binding against the
    previous template stripped of its resources leaves only Delete tasks.
    """
    stack_name = args['--stack-name']
    org_client = session.client('organizations')
    state = load_state(log, config, session, get_master_account_id(org_client))
    previous = state.get_previous_template()
    if previous:
        contents = json.loads(previous)
        contents.pop('Resources', None)
        template = TemplateRoot(log, contents)
    else:
        template = TemplateRoot.empty(log)

    writer = AwsStackWriter(log, session, config['org_access_role'])
    task_provider = CfnTaskProvider(log, state, writer)
    binder = CloudFormationBinder(log, stack_name, template, state, task_provider)
    tasks = binder.enum_tasks()
    if not tasks:
        log.info("no stacks found with name {}.".format(stack_name))
        return
    run_stack_tasks(log, config, state, stack_name, tasks)


def main():
    args = docopt(__doc__, version=awsorgformation.__version__)
    log = get_logger(args)
    log.debug(args)
    try:
        config = load_config(log, args)
        session = boto3.Session(profile_name=config['profile'])
        if args['update']:
            update(log, args, config, session)
        elif args['update-stacks']:
            update_stacks(log, args, config, session)
        elif args['delete-stacks']:
            delete_stacks(log, args, config, session)
    except (OrgFormationError, ClientError) as e:
        log.critical(e)
        sys.exit(1)


if __name__ == "__main__":
    main()
