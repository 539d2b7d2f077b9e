"""
Persisted state: physical ids, last committed hashes and the previously
applied template.  Stored as a single json document in S3 or on disk.
"""

import os
import json
import copy
import tempfile
import threading

import boto3
from botocore.exceptions import ClientError

from awsorgformation.errors import OrgFormationError
from awsorgformation.utils import error_code


TEMPLATE_HASH_KEY = 'organization.template.hash'
ACCOUNT_TYPES = ('OC::ORG::MasterAccount', 'OC::ORG::Account')


class FileStorageProvider(object):

    def __init__(self, path):
        self.path = os.path.expanduser(path)

    def get(self):
        if not os.path.isfile(self.path):
            return None
        with open(self.path) as f:
            return f.read()

    def put(self, contents):
        dirname = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(dir=dirname, suffix='.tmp')
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(contents)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def __str__(self):
        return "file: {}".format(self.path)


class S3StorageProvider(object):

    def __init__(self, bucket_name, object_key, session=None, region=None):
        self.bucket_name = bucket_name
        self.object_key = object_key
        self.region = region
        session = session or boto3.Session()
        self.s3_client = session.client('s3', region_name=region)

    def get(self):
        try:
            response = self.s3_client.get_object(
                    Bucket=self.bucket_name, Key=self.object_key)
        except ClientError as e:
            if error_code(e) in ('NoSuchKey', 'NoSuchBucket'):
                return None
            raise
        return response['Body'].read().decode('utf-8')

    def put(self, contents):
        try:
            self._put_object(contents)
        except ClientError as e:
            if error_code(e) != 'NoSuchBucket':
                raise
            self.create_bucket()
            self._put_object(contents)

    def _put_object(self, contents):
        self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=self.object_key,
                Body=contents.encode('utf-8'))

    def create_bucket(self):
        kwargs = dict(Bucket=self.bucket_name)
        if self.region and self.region != 'us-east-1':
            kwargs['CreateBucketConfiguration'] = dict(LocationConstraint=self.region)
        self.s3_client.create_bucket(**kwargs)
        self.s3_client.put_public_access_block(
                Bucket=self.bucket_name,
                PublicAccessBlockConfiguration=dict(
                    BlockPublicAcls=True,
                    IgnorePublicAcls=True,
                    BlockPublicPolicy=True,
                    RestrictPublicBuckets=True))

    def __str__(self):
        return "s3://{}/{}".format(self.bucket_name, self.object_key)


class PersistedState(object):
    """
    The durable record of a run.  Document layout:

        masterAccountId:  the organization this state belongs to
        bindings:         type -> logicalId -> binding
        stacks:           stackName -> accountId -> region -> target
        values:           free form string values
        previousTemplate: source of the last applied template

    Task perform callables run on worker threads, every mutation takes
    the state lock.
    """

    @classmethod
    def load(cls, log, provider, master_account_id):
        contents = provider.get()
        document = {}
        if contents and contents.strip():
            try:
                document = json.loads(contents)
            except ValueError as e:
                raise OrgFormationError("unable to parse state file {}: {}".format(
                        provider, e))
        document.setdefault('bindings', {})
        document.setdefault('stacks', {})
        document.setdefault('values', {})
        document.setdefault('previousTemplate', '')
        if not document.get('masterAccountId'):
            document['masterAccountId'] = master_account_id
        elif document['masterAccountId'] != master_account_id:
            raise OrgFormationError(
                    "state and session do not belong to the same organization: "
                    "state master account '{}', session master account '{}'".format(
                    document['masterAccountId'], master_account_id))
        log.debug("loaded state from {}".format(provider))
        return cls(log, document, provider)

    @classmethod
    def create_empty(cls, log, master_account_id):
        state = cls(log, dict(
                masterAccountId=master_account_id,
                bindings={},
                stacks={},
                values={},
                previousTemplate=''))
        state.dirty = True
        return state

    def __init__(self, log, document, provider=None):
        self.log = log
        self.state = document
        self.provider = provider
        self.master_account_id = document.get('masterAccountId')
        self.dirty = False
        self.lock = threading.Lock()

    def get_binding(self, resource_type, logical_id):
        binding = self.state['bindings'].get(resource_type, {}).get(logical_id)
        return copy.deepcopy(binding)

    def get_account_binding(self, logical_id):
        for resource_type in ACCOUNT_TYPES:
            binding = self.get_binding(resource_type, logical_id)
            if binding:
                return binding
        return None

    def enum_bindings(self, resource_type):
        return [copy.deepcopy(b)
                for b in self.state['bindings'].get(resource_type, {}).values()]

    def set_binding(self, binding):
        with self.lock:
            bindings = self.state['bindings'].setdefault(binding['type'], {})
            bindings[binding['logicalId']] = dict(
                    type=binding['type'],
                    logicalId=binding['logicalId'],
                    physicalId=binding.get('physicalId'),
                    lastCommittedHash=binding.get('lastCommittedHash'))
            self.dirty = True
        self.log.debug("set binding {}/{} -> {}".format(
                binding['type'], binding['logicalId'], binding.get('physicalId')))

    def remove_binding(self, binding):
        with self.lock:
            bindings = self.state['bindings'].get(binding['type'], {})
            if binding['logicalId'] in bindings:
                del bindings[binding['logicalId']]
                if not bindings:
                    del self.state['bindings'][binding['type']]
                self.dirty = True

    def get_target(self, stack_name, account_id, region):
        target = self.state['stacks'].get(stack_name, {}).get(account_id, {}).get(region)
        return copy.deepcopy(target)

    def set_target(self, target):
        with self.lock:
            stack = self.state['stacks'].setdefault(target['stackName'], {})
            account = stack.setdefault(target['accountId'], {})
            account[target['region']] = dict(target)
            self.dirty = True

    def remove_target(self, stack_name, account_id, region):
        with self.lock:
            stack = self.state['stacks'].get(stack_name)
            if not stack:
                return
            account = stack.get(account_id)
            if not account or region not in account:
                return
            del account[region]
            if not account:
                del stack[account_id]
            if not stack:
                del self.state['stacks'][stack_name]
            self.dirty = True

    def enum_targets(self, stack_name):
        result = []
        for account in self.state['stacks'].get(stack_name, {}).values():
            for target in account.values():
                result.append(copy.deepcopy(target))
        return result

    def list_stacks(self):
        return sorted(self.state['stacks'].keys())

    def get_previous_template(self):
        return self.state.get('previousTemplate') or None

    def set_previous_template(self, source):
        with self.lock:
            self.state['previousTemplate'] = source
            self.dirty = True

    def get_value(self, key):
        return self.state['values'].get(key)

    def put_value(self, key, value):
        with self.lock:
            self.state['values'][key] = value
            self.dirty = True

    def get_template_hash(self):
        return self.get_value(TEMPLATE_HASH_KEY)

    def put_template_hash(self, value):
        self.put_value(TEMPLATE_HASH_KEY, value)

    def to_json(self):
        with self.lock:
            return json.dumps(self.state, indent=2)

    def save(self):
        if not self.dirty:
            return
        if self.provider is None:
            raise OrgFormationError('no storage provider to save state to')
        self.provider.put(self.to_json())
        self.dirty = False
        self.log.debug("saved state to {}".format(self.provider))
