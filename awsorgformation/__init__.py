"""Manage an AWS Organization and its CloudFormation stacks from a template"""

__version__ = '0.1.0'
