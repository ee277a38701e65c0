"""
Cognito User Pool Backup Tool

Exports users and groups of an AWS Cognito User Pool to JSON files and
restores them into a (new) pool. Users are exported with their group
memberships embedded so that restoring users also restores membership.
Features exponential backoff and retry to handle Cognito rate limiting.
"""

import asyncio
import gzip
import logging
import os
import random
import shutil
import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError
from pathvalidate import sanitize_filename

from cognito_backup.pipeline import (
    DEFAULT_CONCURRENCY,
    BackupError,
    JsonArrayWriter,
    MinIntervalThrottle,
    Page,
    PaginatedExporter,
    RateLimitedRestorer,
    Record,
    RestoreReport,
    Throttle,
    load_records,
)


logger = logging.getLogger(__name__)


def get_filename(user_pool_id: str) -> str:
    return sanitize_filename(f"{user_pool_id}.json")


def get_groups_filename(user_pool_id: str) -> str:
    return sanitize_filename(f"{user_pool_id}_groups.json")


class CognitoBackup:
    """Backs up and restores Cognito User Pool users and groups with retry mechanism."""

    # Define retry configuration
    MAX_RETRIES = 8
    BASE_DELAY = 0.5  # Base delay in seconds
    MAX_DELAY = 30.0  # Maximum delay in seconds
    JITTER = 0.25  # Jitter factor for randomization

    THROTTLING_ERRORS = ("ThrottlingException", "TooManyRequestsException", "Throttling", "LimitExceededException")

    PAGE_SIZE = 60  # Cognito API limit for list_users
    GROUP_PAGE_SIZE = 60
    MAX_USER_POOLS = 60  # Cognito API limit for list_user_pools

    # AdminListGroupsForUser allows 50 calls per second, stay at 40
    ENRICH_MIN_INTERVAL = 0.025
    # Create calls allow 10 per second, stay at 4
    RESTORE_MIN_INTERVAL = 0.25

    # Writable fields accepted by create_group
    GROUP_FIELDS = ("Description", "Precedence", "RoleArn")

    def __init__(
        self,
        region: Optional[str] = None,
        profile: Optional[str] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        restore_min_interval: Optional[float] = None,
    ):
        """
        Initialize the Cognito backup client.

        Args:
            region: AWS region where the pools are located (boto3 default chain if None)
            profile: AWS profile to use (optional)
            concurrency: Maximum in-flight enrichment / create calls
            max_retries: Maximum number of retry attempts (defaults to class constant)
            base_delay: Base delay for exponential backoff (defaults to class constant)
            restore_min_interval: Minimum seconds between restore calls (defaults to class constant)
        """
        self.region = region
        self.concurrency = concurrency

        # Retry configuration
        self.max_retries = max_retries if max_retries is not None else self.MAX_RETRIES
        self.base_delay = base_delay if base_delay is not None else self.BASE_DELAY
        self.restore_min_interval = restore_min_interval if restore_min_interval is not None else self.RESTORE_MIN_INTERVAL

        # Initialize AWS clients
        if profile:
            session = boto3.Session(profile_name=profile)
            self.client = session.client("cognito-idp", region_name=region)
            self.s3_client = session.client("s3", region_name=region)
        else:
            self.client = boto3.client("cognito-idp", region_name=region)
            self.s3_client = boto3.client("s3", region_name=region)

    def with_backoff_retry(self, func, *args, **kwargs):
        """
        Execute a function with exponential backoff and retry.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result from the function

        Raises:
            ClientError: If the error is not a throttling error or retries are exhausted
        """
        retries = 0
        while True:
            try:
                return func(*args, **kwargs)
            except ClientError as e:
                error_code = e.response.get("Error", {}).get("Code", "")
                error_message = e.response.get("Error", {}).get("Message", "")

                if error_code not in self.THROTTLING_ERRORS:
                    logger.debug(f"AWS error: {error_code} - {error_message}")
                    raise

                if retries >= self.max_retries:
                    logger.error(f"Maximum retries exceeded: {error_message}")
                    raise

                # Calculate delay with exponential backoff and jitter
                delay = min(self.MAX_DELAY, self.base_delay * (2**retries))
                jitter = random.uniform(-self.JITTER * delay, self.JITTER * delay)
                delay = max(0, delay + jitter)

                retries += 1
                logger.warning(f"Rate limit error: {error_code}. Retrying in {delay:.2f}s (Attempt {retries}/{self.max_retries})")
                time.sleep(delay)

    async def call(self, func, *args, **kwargs):
        """Run a blocking boto3 call, with retry, without blocking the event loop."""
        return await asyncio.to_thread(self.with_backoff_retry, func, *args, **kwargs)

    def list_user_pools(self) -> List[str]:
        """
        List the ids of every user pool in the account.

        Raises:
            BackupError: If the account has more pools than a single page holds
        """
        data = self.with_backoff_retry(self.client.list_user_pools, MaxResults=self.MAX_USER_POOLS)
        if data.get("NextToken"):
            raise BackupError(f"More than {self.MAX_USER_POOLS} user pools is not yet supported")
        user_pool_ids = [pool["Id"] for pool in data.get("UserPools", [])]
        logger.debug(f"User pools: {user_pool_ids}")
        return user_pool_ids

    # Listing / enrichment calls used by the exporter

    async def list_users_page(self, user_pool_id: str, pagination_token: Optional[str] = None) -> Page:
        params = {"UserPoolId": user_pool_id, "Limit": self.PAGE_SIZE}
        if pagination_token:
            params["PaginationToken"] = pagination_token
        response = await self.call(self.client.list_users, **params)
        return Page(response.get("Users", []), response.get("PaginationToken"))

    async def list_groups_page(self, user_pool_id: str, next_token: Optional[str] = None) -> Page:
        params = {"UserPoolId": user_pool_id, "Limit": self.GROUP_PAGE_SIZE}
        if next_token:
            params["NextToken"] = next_token
        response = await self.call(self.client.list_groups, **params)
        return Page(response.get("Groups", []), response.get("NextToken"))

    async def get_user_group_names(self, user_pool_id: str, user: Record, throttle: Optional[Throttle] = None) -> Dict[str, Any]:
        """
        Fetch the names of every group the user belongs to, as the ``Groups`` field.

        The caller acquires ``throttle`` for the first page; each follow-up
        ``NextToken`` page acquires it again here.
        """
        group_names = []
        params = {"UserPoolId": user_pool_id, "Username": user["Username"]}
        while True:
            response = await self.call(self.client.admin_list_groups_for_user, **params)
            group_names.extend(group["GroupName"] for group in response.get("Groups", []))
            if not response.get("NextToken"):
                break
            params["NextToken"] = response["NextToken"]
            if throttle is not None:
                await throttle.acquire()
        return {"Groups": group_names}

    # Backup

    async def backup_users(self, user_pool_id: str, output_file: str) -> int:
        """
        Export all users of a pool, with their group names, to a JSON file.

        Args:
            user_pool_id: The Cognito User Pool ID
            output_file: Path to the JSON output file

        Returns:
            Number of exported users
        """
        throttle = MinIntervalThrottle(self.ENRICH_MIN_INTERVAL)
        exporter = PaginatedExporter(
            list_page=lambda token: self.list_users_page(user_pool_id, token),
            enrich=lambda user: self.get_user_group_names(user_pool_id, user, throttle),
            concurrency=self.concurrency,
            throttle=throttle,
        )
        logger.info(f"Exporting users of {user_pool_id} to {output_file}")
        return await exporter.export(JsonArrayWriter(output_file))

    async def backup_groups(self, user_pool_id: str, output_file: str) -> int:
        """Export all groups of a pool to a JSON file. Returns the number of exported groups."""
        exporter = PaginatedExporter(list_page=lambda token: self.list_groups_page(user_pool_id, token))
        logger.info(f"Exporting groups of {user_pool_id} to {output_file}")
        return await exporter.export(JsonArrayWriter(output_file))

    async def backup_all_users(self, directory: str = ".") -> Dict[str, str]:
        """
        Export the users of every pool in the account, one pool at a time.

        Args:
            directory: Directory receiving one ``<user-pool-id>.json`` file per pool

        Returns:
            Mapping of user pool id to the file it was exported to
        """
        os.makedirs(directory, exist_ok=True)
        exported = {}
        for user_pool_id in await asyncio.to_thread(self.list_user_pools):
            output_file = os.path.join(directory, get_filename(user_pool_id))
            await self.backup_users(user_pool_id, output_file)
            exported[user_pool_id] = output_file
        return exported

    # Restore

    def _restorer(self, create, add_to_group=None, credential=None, key_field="Username") -> RateLimitedRestorer:
        return RateLimitedRestorer(
            create=create,
            add_to_group=add_to_group,
            credential=credential,
            throttle=MinIntervalThrottle(self.restore_min_interval),
            concurrency=self.concurrency,
            key_field=key_field,
        )

    async def create_user(self, user_pool_id: str, user: Record, temporary_password: Optional[str]) -> Dict[str, Any]:
        params = {
            "UserPoolId": user_pool_id,
            "Username": user["Username"],
            "MessageAction": "SUPPRESS",
            "ForceAliasCreation": False,
            "UserAttributes": user.get("Attributes", []),
        }
        if temporary_password is not None:
            params["TemporaryPassword"] = str(temporary_password)
        return await self.call(self.client.admin_create_user, **params)

    async def add_user_to_group(self, user_pool_id: str, user: Record, group_name: str) -> Dict[str, Any]:
        return await self.call(
            self.client.admin_add_user_to_group,
            UserPoolId=user_pool_id,
            Username=user["Username"],
            GroupName=group_name,
        )

    async def create_group(self, user_pool_id: str, group: Record) -> Dict[str, Any]:
        params = {"UserPoolId": user_pool_id, "GroupName": group["GroupName"]}
        # boto3 rejects None for optional parameters
        for field in self.GROUP_FIELDS:
            if group.get(field) is not None:
                params[field] = group[field]
        return await self.call(self.client.create_group, **params)

    async def restore_users(self, user_pool_id: str, input_file: str, temporary_password: str) -> RestoreReport:
        """
        Recreate every user in a backup file, then re-add each to its groups.

        Args:
            user_pool_id: Target Cognito User Pool ID
            input_file: JSON file produced by ``backup_users``
            temporary_password: Temporary password given to every restored user

        Returns:
            Per-user restore report
        """
        users = load_records(input_file)
        restorer = self._restorer(
            create=lambda user, password: self.create_user(user_pool_id, user, password),
            add_to_group=lambda user, group_name: self.add_user_to_group(user_pool_id, user, group_name),
            credential=temporary_password,
        )
        logger.info(f"Restoring {len(users)} users from {input_file} to {user_pool_id}")
        return await restorer.restore(users)

    async def restore_groups(self, user_pool_id: str, input_file: str) -> RestoreReport:
        """Recreate every group in a backup file. Returns the per-group restore report."""
        groups = load_records(input_file)
        restorer = self._restorer(
            create=lambda group, credential: self.create_group(user_pool_id, group),
            key_field="GroupName",
        )
        logger.info(f"Restoring {len(groups)} groups from {input_file} to {user_pool_id}")
        return await restorer.restore(groups)

    def upload_to_s3(self, path: str, bucket: str, key: Optional[str] = None, compress: bool = False) -> str:
        """
        Upload a backup file to S3, optionally compressing it first.

        Returns:
            The S3 key the file was uploaded under
        """
        file_to_upload = path
        upload_key = key or os.path.basename(path)
        gz_path = None

        try:
            if compress:
                gz_path = f"{path}.gz"
                with open(path, "rb") as src, gzip.open(gz_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                file_to_upload = gz_path
                upload_key = key or os.path.basename(gz_path)

            self.with_backoff_retry(self.s3_client.upload_file, file_to_upload, bucket, upload_key)
            logger.info(f"Uploaded {file_to_upload} to s3://{bucket}/{upload_key}")
            return upload_key

        finally:
            if gz_path and os.path.exists(gz_path):
                os.remove(gz_path)
