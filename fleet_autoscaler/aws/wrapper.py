import asyncio
import functools
import threading
import logging
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.exceptions import ClientError
from botocore.config import Config
from retry import retry

RETRIES_NUMBER = 3
REGION = 'us-east-1'

# S3 error codes returned when a conditional write loses a race
PRECONDITION_ERROR_CODES = ('PreconditionFailed', 'ConditionalRequestConflict', '412', '409')


async def run_blocking(func, *args, **kwargs):
    """
    Run a blocking boto3 call in the default executor so the event loop keeps ticking.

    Args:
        func: Callable to run
        *args, **kwargs: Arguments for the callable

    Returns:
        Whatever the callable returns
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


def is_precondition_failure(error: ClientError) -> bool:
    code = str(error.response.get('Error', {}).get('Code', ''))
    status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
    return code in PRECONDITION_ERROR_CODES or status in (409, 412)


def is_missing_key(error: ClientError) -> bool:
    code = str(error.response.get('Error', {}).get('Code', ''))
    return code in ('NoSuchKey', '404', 'NotFound')


class AWSWrapper:
    """
    Thin layer over a boto3 session with retries on session and client creation.

    Methods are blocking; async callers go through run_blocking(). Clients are created
    once per service and region and shared between executor threads, since boto3 clients
    are thread-safe but sessions are not.
    """

    def __init__(self, aws_access_key_id: str = None, aws_secret_access_key: str = None,
                 aws_session_token: str = None, sso_profile_name: str = None,
                 region_name: str = REGION, timeout: Optional[int] = None):
        self._region_name = region_name
        self._timeout = timeout
        self._clients: Dict[Tuple[str, Optional[str]], Any] = {}
        self._lock = threading.Lock()
        self._session = self._create_boto_session(aws_access_key_id, aws_secret_access_key,
                                                  aws_session_token, sso_profile_name)

    @retry(exceptions=ClientError, tries=RETRIES_NUMBER, delay=3)
    def _create_boto_session(self, aws_access_key_id: str = None, aws_secret_access_key: str = None,
                             aws_session_token: str = None, sso_profile_name: str = None):
        if sso_profile_name:
            logging.debug(f"Creating boto3 session from SSO profile {sso_profile_name}")
            return boto3.session.Session(profile_name=sso_profile_name, region_name=self._region_name)

        logging.debug("Creating boto3 session from access keys or the default credential chain")
        return boto3.session.Session(aws_access_key_id, aws_secret_access_key, aws_session_token,
                                     region_name=self._region_name)

    def _default_client_config(self) -> Config:
        return Config(
            max_pool_connections=50,
            connect_timeout=self._timeout or 60,
            read_timeout=self._timeout or 60,
            retries={'max_attempts': RETRIES_NUMBER, 'mode': 'standard'}
        )

    @retry(exceptions=ClientError, tries=RETRIES_NUMBER, delay=3)
    def create_aws_client(self, service_name: str, region_name: str = None, config=None):
        """
        Get a boto3 client for a service, creating it on first use.

        Calls made through the client are bounded by the wrapper's timeout, if one was given.
        Clients created with a custom config are not cached.

        Args:
            service_name: AWS service name ('ec2', 's3', etc.)
            region_name: Optional AWS region override
            config: Optional botocore configuration

        Returns:
            Boto3 client for the requested service
        """
        with self._lock:
            if config is not None:
                return self._session.client(service_name=service_name, region_name=region_name, config=config)

            cache_key = (service_name, region_name)
            client = self._clients.get(cache_key)
            if client is None:
                logging.debug(f"Creating {service_name} client")
                client = self._session.client(service_name=service_name, region_name=region_name,
                                              config=self._default_client_config())
                self._clients[cache_key] = client
            return client

    @retry(exceptions=ClientError, tries=RETRIES_NUMBER, delay=3)
    def _get_object(self, bucket_name: str, file_key: str):
        s3_client = self.create_aws_client('s3')
        try:
            return s3_client.get_object(Bucket=bucket_name, Key=file_key)
        except ClientError as e:
            if is_missing_key(e):
                return None
            raise

    def get_file_content_from_s3_bucket(self, bucket_name: str, file_key: str) -> Tuple[Optional[bytes], Optional[str]]:
        """
        Get file content from an S3 bucket together with its ETag.

        Args:
            bucket_name: S3 bucket name
            file_key: Path to the file in the bucket

        Returns:
            tuple: (content, etag), or (None, None) if the object does not exist
        """
        response = self._get_object(bucket_name, file_key)
        if response is None:
            logging.debug(f"No object at s3://{bucket_name}/{file_key}")
            return None, None
        return response['Body'].read(), response.get('ETag')

    def upload_bytes_to_s3(self, bucket: str, file_path: str, content: bytes, metadata: dict = None,
                           if_match: Optional[str] = None, if_none_match: Optional[str] = None) -> Optional[str]:
        """
        Upload bytes directly to an S3 bucket, optionally as a conditional write.

        Conditional writes are not retried here: a failed precondition means another writer
        got there first and the caller has to re-read before trying again.

        Args:
            bucket: The name of the S3 bucket
            file_path: The path where the file should be stored in the bucket
            content: The bytes to upload
            metadata: Optional metadata for the S3 object
            if_match: Only write if the current object has this ETag
            if_none_match: Pass '*' to only write if the object does not exist yet

        Returns:
            str: ETag of the written object

        Raises:
            ClientError: If the upload fails or the precondition does not hold
        """
        s3_client = self.create_aws_client('s3')

        kwargs = {
            'Bucket': bucket,
            'Key': file_path,
            'Body': content,
            'ContentType': 'application/json',
            'Metadata': metadata or {}
        }
        if if_match is not None:
            kwargs['IfMatch'] = if_match
        if if_none_match is not None:
            kwargs['IfNoneMatch'] = if_none_match

        try:
            response = s3_client.put_object(**kwargs)
            logging.debug(f"Successfully uploaded bytes to s3://{bucket}/{file_path}")
            return response.get('ETag')
        except ClientError as e:
            if is_precondition_failure(e):
                logging.info(f"Conditional write to s3://{bucket}/{file_path} lost a race: {e}")
            else:
                logging.error(f"Error uploading bytes to s3://{bucket}/{file_path}: {e}")
            raise
