import json
import logging
from typing import Optional, Tuple

from botocore.exceptions import ClientError

from fleet_autoscaler.aws.wrapper import AWSWrapper, is_precondition_failure, run_blocking
from fleet_autoscaler.state.document import DEFAULT_UPDATE_RETRIES, State, StateDocument


class S3StateDocument(StateDocument):
    """
    State document stored as a JSON object in S3.

    Compare-and-swap is implemented with S3 conditional writes: If-Match on the ETag that
    was read, or If-None-Match '*' when the object did not exist yet.
    """

    def __init__(self, aws_wrapper: AWSWrapper, bucket: str, key: str, retries: int = DEFAULT_UPDATE_RETRIES):
        super().__init__(key, retries)
        self._aws_wrapper = aws_wrapper
        self._bucket = bucket

    async def _read(self) -> Tuple[State, Optional[str]]:
        content, etag = await run_blocking(self._aws_wrapper.get_file_content_from_s3_bucket, self._bucket, self.key)
        if not content:
            logging.info(f"No state found at s3://{self._bucket}/{self.key}, starting empty")
            return {}, etag

        try:
            state = json.loads(content.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            # Overwritten on the next successful update
            logging.warning(f"Error parsing JSON state data at s3://{self._bucket}/{self.key}: {e}")
            return {}, etag

        if not isinstance(state, dict):
            logging.warning(f"Unexpected state document type {type(state).__name__} at s3://{self._bucket}/{self.key}")
            return {}, etag
        return state, etag

    async def _write(self, state: State, version: Optional[str]) -> bool:
        body = json.dumps(state, sort_keys=True).encode('utf-8')
        try:
            await run_blocking(
                self._aws_wrapper.upload_bytes_to_s3,
                bucket=self._bucket,
                file_path=self.key,
                content=body,
                if_match=version,
                if_none_match=None if version else '*'
            )
        except ClientError as e:
            if is_precondition_failure(e):
                return False
            raise
        return True
