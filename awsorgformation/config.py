"""
Assemble run options from the cli, the optional config file and defaults.
"""

import os

import yaml

from awsorgformation.errors import OrgFormationError
from awsorgformation.validator import config_validator, validate


DEFAULT_CONFIG_FILE = '~/.awsorgformation/config.yaml'

DEFAULTS = dict(
    state_bucket_name='organization-formation-${AWS::AccountId}',
    state_object='state.json',
    state_file=None,
    profile=None,
    org_access_role='OrganizationAccountAccessRole',
    max_concurrent_tasks=1,
    failed_tasks_tolerance=0,
)

# cli option -> config key
CLI_OPTIONS = {
    '--state-bucket-name': 'state_bucket_name',
    '--state-object': 'state_object',
    '--state-file': 'state_file',
    '--profile': 'profile',
    '--org-access-role': 'org_access_role',
    '--max-concurrent-tasks': 'max_concurrent_tasks',
    '--failed-tasks-tolerance': 'failed_tasks_tolerance',
}
INTEGER_OPTIONS = ('max_concurrent_tasks', 'failed_tasks_tolerance')


def scan_config_file(log, args):
    if args.get('--config'):
        config_file = args['--config']
    else:
        config_file = DEFAULT_CONFIG_FILE
    config_file = os.path.expanduser(config_file)
    if not os.path.isfile(config_file):
        log.debug("config_file not found: {}".format(config_file))
        return None
    log.debug("loading config file: {}".format(config_file))
    with open(config_file) as f:
        try:
            config = yaml.safe_load(f.read())
        except (yaml.YAMLError, UnicodeDecodeError):
            log.error("{} not a valid yaml file".format(config_file))
            return None
    log.debug("config: {}".format(config))
    return config


def load_config(log, args):
    """
    Merge config file params and cli options over DEFAULTS.  Cli
    options win.  Return the merged config dict.
    """
    config = scan_config_file(log, args) or {}
    if not isinstance(config, dict):
        raise OrgFormationError('config file must contain a mapping')
    validate(log, config_validator(log), config, 'config file')
    merged = dict(DEFAULTS)
    merged.update(config)
    for option, key in CLI_OPTIONS.items():
        if args.get(option) is not None:
            merged[key] = args[option]
    for key in INTEGER_OPTIONS:
        try:
            merged[key] = int(merged[key])
        except (TypeError, ValueError):
            raise OrgFormationError("option '{}' must be an integer, got '{}'".format(
                    key, merged[key]))
    if merged['max_concurrent_tasks'] < 1:
        raise OrgFormationError("option 'max_concurrent_tasks' must be at least 1")
    if merged['failed_tasks_tolerance'] < 0:
        raise OrgFormationError("option 'failed_tasks_tolerance' must not be negative")
    log.debug("config: {}".format(merged))
    return merged


def get_state_bucket_name(config, account_id):
    return config['state_bucket_name'].replace('${AWS::AccountId}', account_id)
