"""
Object storage handler for backup archives.

S3Storage talks to AWS S3 or any S3-compatible provider (MinIO, Ceph,
Wasabi...) through boto3. It exposes the five operations a backup run
needs: identity check, bucket listing, object listing with timestamps,
object put and object delete.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from gitea_backup.errors import AuthError, BackupError, UploadError


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class StorageError(BackupError):
    """Raised when a listing or delete operation fails."""
    code = 'StorageFailed'


@dataclass(frozen=True)
class RemoteObject:
    """An object stored under the backup prefix."""
    key: str
    last_modified: datetime
    size: int

    @property
    def name(self) -> str:
        return self.key.rsplit('/', 1)[-1]


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for storing backups in S3.

    Objects are stored under a flat key format: {prefix}/{filename}
    """

    def __init__(self, access_key: str, secret_key: str, bucket_name: str,
                 region: str = 'us-east-1', endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID
            secret_key: AWS secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            endpoint_url: Endpoint of an S3-compatible provider (default: AWS)
        """
        self.bucket_name = bucket_name
        self.endpoint_url = endpoint_url

        try:
            self.session = boto3.Session(
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
            self.s3_client = self.session.client('s3', endpoint_url=endpoint_url)
        except (BotoCoreError, ValueError) as e:
            raise AuthError(f"Failed to initialize S3 client: {e}", code='StorageCredentialsInvalid')

    def verify_credentials(self) -> str:
        """
        Check that the credentials are accepted.

        Uses STS GetCallerIdentity on AWS. S3-compatible providers rarely
        implement STS, so with a custom endpoint ListBuckets is used instead.

        Returns:
            The caller identity (ARN, or the endpoint for custom providers)

        Raises:
            AuthError: StorageCredentialsInvalid if the call is rejected
        """
        try:
            if self.endpoint_url:
                self.s3_client.list_buckets()
                return self.endpoint_url

            sts_client = self.session.client('sts')
            identity = sts_client.get_caller_identity()
            return identity.get('Arn', '')
        except ClientError as e:
            raise AuthError(
                f"Storage credentials verification failed ({_error_code(e)})",
                code='StorageCredentialsInvalid'
            )
        except BotoCoreError as e:
            raise AuthError(f"Storage credentials verification failed: {e}", code='StorageCredentialsInvalid')

    def test_connection(self) -> bool:
        """
        Test that the bucket can be listed with the current credentials.

        Returns:
            True if the bucket is listable

        Raises:
            AuthError: StorageBucketUnreachable if listing fails
        """
        try:
            self.s3_client.list_objects_v2(Bucket=self.bucket_name, MaxKeys=1)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('404', 'NoSuchBucket'):
                message = f"Bucket does not exist: {self.bucket_name}"
            elif error_code in ('403', 'AccessDenied'):
                message = f"Access denied to bucket: {self.bucket_name}"
            else:
                message = f"Cannot access S3 bucket {self.bucket_name} ({error_code})"
            raise AuthError(message, code='StorageBucketUnreachable')
        except BotoCoreError as e:
            raise AuthError(f"Cannot access S3 bucket {self.bucket_name}: {e}", code='StorageBucketUnreachable')

    def upload(self, local_path: str, s3_key: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Upload archive to S3.

        Args:
            local_path: Path to local archive file
            s3_key: Destination object key
            cancellation_check: Optional function to call periodically to check if operation should be cancelled

        Returns:
            S3 key of uploaded file

        Raises:
            UploadError: If upload fails
        """
        if not os.path.exists(local_path):
            raise UploadError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key, cancellation_check)
            else:
                # Check for cancellation before simple upload
                if cancellation_check:
                    cancellation_check()
                self._simple_upload(local_path, s3_key)

            return s3_key

        except ClientError as e:
            raise UploadError(f"S3 upload failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise UploadError(f"S3 upload failed: {e}")
        except OSError as e:
            raise UploadError(f"Failed to read {local_path}: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        """Upload file using a single put_object."""
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str,
                          cancellation_check: Optional[Callable[[], None]] = None):
        """
        Upload large file using multipart upload with cancellation support.

        The upload is aborted on any error or cancellation so no
        incomplete parts are left behind.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    # Check for cancellation before each chunk
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload for {s3_key}: {abort_error}")
            raise

    def delete(self, s3_key: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=s3_key
            )
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_objects(self, prefix: str) -> List[RemoteObject]:
        """
        List the objects directly under a prefix.

        Keys in deeper "subdirectories" of the prefix are not returned.

        Args:
            prefix: Key prefix; a trailing '/' is added when missing

        Returns:
            List of RemoteObject

        Raises:
            StorageError: If listing fails
        """
        if prefix and not prefix.endswith('/'):
            prefix = f"{prefix}/"

        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix, Delimiter='/'):
                for obj in page.get('Contents', []):
                    objects.append(RemoteObject(
                        key=obj['Key'],
                        last_modified=obj['LastModified'],
                        size=obj['Size']
                    ))

            return objects

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")
