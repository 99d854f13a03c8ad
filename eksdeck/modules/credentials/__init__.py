"""
Credentials Module - Black Box Interface

Purpose: Manage the AWS CLI profile used by eksctl/kubectl/aws
Interface: configure(), check_connection(), clear()
Hidden: `aws configure set` sequencing, failure cleanup
"""

from .credentials import CREDENTIAL_KEYS, AwsCredentialManager, ClearResult, CredentialError

__all__ = ["AwsCredentialManager", "CREDENTIAL_KEYS", "ClearResult", "CredentialError"]
