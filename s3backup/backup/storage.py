"""
Storage handlers for backup files.

Supports:
- S3Storage: Object operations against an S3-compatible bucket
- LocalStorage: Deletion of files from the local backup directory

S3Storage is the object store used by the transfer and retention engines.
Any object with the same methods can stand in for it:

    exists(key) -> bool
    delete(key)
    put_object(key, body)
    initiate_multipart(key) -> upload_id
    upload_part(key, upload_id, part_number, body) -> etag
    complete_multipart(key, upload_id, parts)
    abort_multipart(key, upload_id)
"""

import os
from typing import BinaryIO, List, Optional, Tuple, Union

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class LocalIOError(Exception):
    """Raised when a local file cannot be opened, read or deleted."""
    pass


# HeadObject reports a missing key through one of these codes
_NOT_FOUND_CODES = {'404', 'NoSuchKey', 'NotFound'}


def _error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for objects in an S3-compatible bucket.

    The bucket is bound at construction; every method takes the object key.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket_name: str,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        max_pool_connections: int = 50
    ):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID
            secret_key: AWS secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible stores (R2, MinIO)
            max_pool_connections: HTTP pool size, should cover file x part concurrency
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                config=BotoConfig(
                    s3={'addressing_style': 'path'},
                    max_pool_connections=max_pool_connections
                )
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def exists(self, key: str) -> bool:
        """
        Check whether an object exists.

        Args:
            key: S3 object key

        Returns:
            True if the object exists

        Raises:
            StorageError: If the check itself fails
        """
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in _NOT_FOUND_CODES:
                return False
            raise StorageError(f"S3 head failed for {key} ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 head failed for {key}: {e}")

    def put_object(self, key: str, body: Union[bytes, BinaryIO]):
        """
        Upload an object with a single put_object call.

        Args:
            key: S3 object key
            body: Bytes or readable binary stream

        Raises:
            StorageError: If upload fails
        """
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=body
            )
        except ClientError as e:
            raise StorageError(f"S3 upload failed for {key} ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed for {key}: {e}")

    def initiate_multipart(self, key: str) -> str:
        """
        Start a multipart upload.

        Returns:
            Upload ID of the new session

        Raises:
            StorageError: If the session cannot be created
        """
        try:
            response = self.s3_client.create_multipart_upload(
                Bucket=self.bucket_name,
                Key=key
            )
            return response['UploadId']
        except ClientError as e:
            raise StorageError(f"Failed to initiate multipart upload for {key} ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to initiate multipart upload for {key}: {e}")

    def upload_part(self, key: str, upload_id: str, part_number: int, body: bytes) -> str:
        """
        Upload one part of a multipart session.

        Returns:
            ETag of the uploaded part

        Raises:
            StorageError: If the part upload fails
        """
        try:
            response = self.s3_client.upload_part(
                Bucket=self.bucket_name,
                Key=key,
                PartNumber=part_number,
                UploadId=upload_id,
                Body=body
            )
            return response['ETag']
        except ClientError as e:
            raise StorageError(f"Failed to upload part {part_number} of {key} ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to upload part {part_number} of {key}: {e}")

    def complete_multipart(self, key: str, upload_id: str, parts: List[Tuple[int, str]]):
        """
        Complete a multipart session.

        Args:
            key: S3 object key
            upload_id: Upload ID from initiate_multipart()
            parts: (part_number, etag) pairs in ascending part number order

        Raises:
            StorageError: If completion fails
        """
        try:
            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={
                    'Parts': [
                        {'PartNumber': part_number, 'ETag': etag}
                        for part_number, etag in parts
                    ]
                }
            )
        except ClientError as e:
            raise StorageError(f"Failed to complete multipart upload for {key} ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to complete multipart upload for {key}: {e}")

    def abort_multipart(self, key: str, upload_id: str):
        """
        Abort a multipart session and discard its uploaded parts.

        Raises:
            StorageError: If the abort call fails
        """
        try:
            self.s3_client.abort_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id
            )
        except ClientError as e:
            raise StorageError(f"Failed to abort multipart upload for {key} ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to abort multipart upload for {key}: {e}")

    def delete(self, key: str):
        """
        Delete an object from S3.

        Args:
            key: S3 object key to delete

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            error_code = _error_code(e)
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            # Try to head the bucket
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class LocalStorage:
    """
    Handler for files in the local backup directory.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Local backup directory
        """
        self.base_path = os.path.abspath(base_path)

    def delete(self, path: str):
        """
        Delete a file from local storage.

        A file that is already gone counts as deleted.

        Args:
            path: Absolute path, or path relative to base_path

        Raises:
            LocalIOError: If deletion fails
        """
        full_path = os.path.join(self.base_path, path)

        try:
            os.remove(full_path)
        except FileNotFoundError:
            return
        except PermissionError as e:
            raise LocalIOError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise LocalIOError(f"Failed to delete local file {full_path}: {e}")
