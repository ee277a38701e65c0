"""Backup and restore AWS Cognito User Pool users and groups."""

__version__ = "0.1.0"
