"""Utility functions used by the various awsorgformation modules"""

import sys
import json
import time
import random
import hashlib
import logging

import boto3
from botocore.exceptions import ClientError
import yaml


# Error codes returned by AWS when an operation should simply be tried again
RETRYABLE_ERROR_CODES = (
    'TooManyRequestsException',
    'ConcurrentModificationException',
    'Throttling',
    'ThrottlingException',
    'RequestLimitExceeded',
    'OptInRequired',
)
MAX_RETRIES = 5


def lookup(dlist, lkey, lvalue, rkey=None):
    """
    Use a known key:value pair to lookup a dictionary in a list of
    dictionaries.  Return the dictonary or None.  If rkey is provided,
    return the value referenced by rkey or None.  If more than one
    dict matches, raise an error.
    args:
        dlist:   lookup table -  a list of dictionaries
        lkey:    name of key to use as lookup criteria
        lvalue:  value to use as lookup criteria
        rkey:    (optional) name of key referencing a value to return
    """
    items = [d for d in dlist
             if lkey in d
             and d[lkey] == lvalue]
    if not items:
        return None
    if len(items) > 1:
        raise RuntimeError(
            "Data Error: lkey:lvalue lookup matches multiple items in dlist"
        )
    if rkey:
        if rkey in items[0]:
            return items[0][rkey]
        return None
    return items[0]


def get_logger(args):
    """
    Setup logging.basicConfig from args.
    Return logging.Logger object.
    """
    # log level
    log_level = logging.INFO
    if args.get('--debug'):
        log_level = logging.DEBUG
    if args.get('--quiet'):
        log_level = logging.CRITICAL
    # log format
    log_format = '%(name)s: %(levelname)-9s%(message)s'
    if args.get('--debug'):
        log_format = '%(name)s: %(levelname)-9s%(funcName)s():  %(message)s'
    if not args.get('--boto-log'):
        logging.getLogger('botocore').propagate = False
        logging.getLogger('boto3').propagate = False
    logging.basicConfig(stream=sys.stdout, format=log_format, level=log_level)
    log = logging.getLogger(__name__)
    return log


def calculate_hash(obj):
    """
    Return md5 hex digest of the order independent json serialization
    of 'obj'.  Used for change detection only.
    """
    serialized = json.dumps(obj, sort_keys=True, default=str)
    return hashlib.md5(serialized.encode('utf-8')).hexdigest()


def error_code(e):
    """Return the AWS error code carried by a botocore ClientError"""
    return e.response.get('Error', {}).get('Code')


def is_retryable(e):
    return isinstance(e, ClientError) and error_code(e) in RETRYABLE_ERROR_CODES


def perform_and_retry_if_needed(func, log, retries=MAX_RETRIES):
    """
    Call 'func' and retry it when AWS answers with a throttling class
    error.  Wait attempt**2 + random(0,1) seconds between attempts.
    Any other error, or the last throttling error, propagates.
    """
    attempt = 0
    while True:
        try:
            return func()
        except ClientError as e:
            if not is_retryable(e) or attempt >= retries:
                raise
            attempt += 1
            wait = attempt ** 2 + random.random()
            log.debug("received retryable error %s. wait %.2f and retry-count %s" %
                    (error_code(e), wait, attempt))
            time.sleep(wait)


def get_assume_role_credentials(account_id, role_name, region_name=None,
        session=None):
    """
    Get temporary sts assume_role credentials for account.
    """
    role_arn = "arn:aws:iam::%s:role/%s" % (account_id, role_name)
    role_session_name = account_id + '-' + role_name.split('/')[-1]
    session = session or boto3.Session()
    sts_client = session.client('sts')

    if account_id == sts_client.get_caller_identity()['Account']:
        return dict(
                aws_access_key_id=None,
                aws_secret_access_key=None,
                aws_session_token=None,
                region_name=region_name)
    credentials = sts_client.assume_role(
            RoleArn=role_arn,
            RoleSessionName=role_session_name
            )['Credentials']
    return dict(
            aws_access_key_id=credentials['AccessKeyId'],
            aws_secret_access_key=credentials['SecretAccessKey'],
            aws_session_token=credentials['SessionToken'],
            region_name=region_name)


def yamlfmt(dict_obj):
    """Convert a dictionary object into a yaml formated string"""
    return yaml.dump(dict_obj, default_flow_style=False)


def to_list(value):
    """Normalize a scalar-or-list template value into a list"""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]
