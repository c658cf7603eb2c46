"""
Remote storage and audit logging for backup artifacts.

Supports:
- DriveStorage: Upload to Google Drive (multipart upload, OAuth bearer token)
- S3Storage: Upload to AWS S3
- SheetsAuditLog: Append one row per attempt to a Google Sheet
"""

import json
import logging
import os
import uuid
from datetime import datetime
from typing import Optional

import boto3
import requests
from botocore.exceptions import ClientError, BotoCoreError, NoCredentialsError
from cryptography.fernet import InvalidToken
from flask import current_app

from dumpwarden.backup.errors import (
    AuditError,
    BackupError,
    CredentialExpiredError,
    TransportError,
    UploadError,
)
from dumpwarden.models import AWSSettings
from dumpwarden.utils.crypto import decrypt_optional
from dumpwarden.utils.google_oauth import GoogleOAuthClient, get_google_settings

logger = logging.getLogger(__name__)

DRIVE_UPLOAD_URL = 'https://www.googleapis.com/upload/drive/v3/files?uploadType=multipart'
SHEETS_APPEND_URL = 'https://sheets.googleapis.com/v4/spreadsheets/{sheet_id}/values/A:D:append'

# S3 error codes that mean the configured keys are no longer usable
_S3_CREDENTIAL_ERRORS = {
    'InvalidAccessKeyId',
    'SignatureDoesNotMatch',
    'ExpiredToken',
    'ExpiredTokenException',
    'InvalidToken',
}


class DriveStorage:
    """Uploads artifacts to a Google Drive folder."""

    def __init__(self, oauth: GoogleOAuthClient, folder_id: Optional[str] = None, timeout: int = 3600):
        self.oauth = oauth
        self.folder_id = folder_id
        self.timeout = timeout

    def upload(self, local_path: str, name: str, prefix: str = '', cancel_token=None) -> str:
        """
        Upload a file and return its Drive file id.

        Raises:
            CredentialExpiredError: Token could not be refreshed or was rejected
            TransportError: Network failure or unexpected response
        """
        if not os.path.exists(local_path):
            raise UploadError(f"Local file not found: {local_path}")

        self.oauth.ensure_valid_token()

        metadata = {'name': name}
        if self.folder_id:
            metadata['parents'] = [self.folder_id]

        boundary = f"dumpwarden-{uuid.uuid4().hex}"
        with open(local_path, 'rb') as f:
            content = f.read()

        body = b''.join([
            f"--{boundary}\r\n".encode(),
            b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
            json.dumps(metadata).encode(),
            f"\r\n--{boundary}\r\n".encode(),
            b"Content-Type: application/gzip\r\n\r\n",
            content,
            f"\r\n--{boundary}--\r\n".encode(),
        ])

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        logger.info(f"Uploading {name} to Google Drive ({len(content) / (1024 * 1024):.2f} MB)")
        try:
            response = requests.post(
                DRIVE_UPLOAD_URL,
                data=body,
                headers={
                    'Authorization': f"Bearer {self.oauth.access_token()}",
                    'Content-Type': f"multipart/related; boundary={boundary}",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"Drive upload failed: {e}")

        if response.status_code in (401, 403):
            raise CredentialExpiredError(f"Drive rejected credentials ({response.status_code}): {response.text}")
        if response.status_code != 200:
            raise TransportError(f"Drive upload failed with status {response.status_code}: {response.text}")

        try:
            file_id = response.json()['id']
        except (ValueError, KeyError) as e:
            raise TransportError(f"Invalid Drive upload response: {e}")

        logger.info(f"Uploaded {name} to Google Drive: {file_id}")
        return file_id


class SheetsAuditLog:
    """
    Appends backup attempts to a spreadsheet.

    Row format: STATUS | DD/MM/YYYY HH:MM:SS | file name | message
    """

    def __init__(self, oauth: GoogleOAuthClient, sheet_id: str, timeout: int = 30):
        self.oauth = oauth
        self.sheet_id = sheet_id
        self.timeout = timeout

    @staticmethod
    def format_row(entry) -> list:
        if entry.success and not entry.error:
            status = 'SUCCESS'
            message = f"Backup of database {entry.database} created successfully"
        else:
            status = 'ERROR'
            message = entry.error or 'Unknown error'

        return [
            status,
            entry.timestamp.strftime('%d/%m/%Y %H:%M:%S'),
            entry.file_name or '',
            message,
        ]

    def record(self, entry):
        """
        Append one audit row.

        Raises:
            AuditError: On any failure, including credential problems
        """
        try:
            self.oauth.ensure_valid_token()
            response = requests.post(
                SHEETS_APPEND_URL.format(sheet_id=self.sheet_id),
                params={'valueInputOption': 'RAW'},
                json={'values': [self.format_row(entry)]},
                headers={'Authorization': f"Bearer {self.oauth.access_token()}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuditError(f"Sheets append failed: {e}")
        except BackupError as e:
            raise AuditError(f"Sheets append failed: {e}")

        if response.status_code != 200:
            raise AuditError(f"Sheets append failed with status {response.status_code}: {response.text}")


class S3Storage:
    """
    Uploads artifacts to AWS S3.

    Key format: {prefix}/{YYYY}/{MM}/{filename}
    """

    def __init__(self, access_key: str, secret_key: str, bucket_name: str, region: str = 'us-east-1'):
        self.bucket_name = bucket_name
        self.region = region
        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except (BotoCoreError, ValueError) as e:
            # e.g. InvalidRegionError for a malformed stored region
            raise TransportError(f"Invalid S3 configuration: {e}")

    @staticmethod
    def build_key(prefix: str, name: str, now: Optional[datetime] = None) -> str:
        now = now or datetime.now()
        key = f"{now.year}/{now.month:02d}/{name}"
        return f"{prefix}/{key}" if prefix else key

    def upload(self, local_path: str, name: str, prefix: str = '', cancel_token=None) -> str:
        """
        Upload a file and return its S3 key.

        Raises:
            CredentialExpiredError: Keys missing, invalid or expired
            TransportError: Any other S3 or network failure
        """
        if not os.path.exists(local_path):
            raise UploadError(f"Local file not found: {local_path}")

        s3_key = self.build_key(prefix, name)
        file_size = os.path.getsize(local_path)

        try:
            # Multipart for files larger than 100MB
            if file_size > 100 * 1024 * 1024:
                self._multipart_upload(local_path, s3_key, cancel_token)
            else:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                self._simple_upload(local_path, s3_key)
        except NoCredentialsError as e:
            raise CredentialExpiredError(f"S3 credentials missing: {e}")
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in _S3_CREDENTIAL_ERRORS:
                raise CredentialExpiredError(f"S3 rejected credentials ({error_code}): {e}")
            raise TransportError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise TransportError(f"S3 upload failed: {e}")

        logger.info(f"Uploaded {name} to s3://{self.bucket_name}/{s3_key}")
        return s3_key

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str, cancel_token=None):
        # 10MB chunks
        chunk_size = 10 * 1024 * 1024

        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=s3_key)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    if cancel_token is not None:
                        cancel_token.raise_if_cancelled()

                    data = f.read(chunk_size)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except Exception:
            try:
                self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=s3_key, UploadId=upload_id)
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise


def create_uploader():
    """
    Pick the configured remote storage.

    Google Drive when Google is authenticated, S3 when AWS settings exist,
    otherwise None (artifacts stay local).

    Raises:
        StorageError: The stored settings cannot produce a working client
    """
    config = current_app.config

    google = get_google_settings()
    if google is not None and google.is_authenticated:
        oauth = GoogleOAuthClient(google)
        return DriveStorage(oauth, folder_id=google.drive_folder or None, timeout=config['UPLOAD_TIMEOUT'])

    aws = AWSSettings.query.first()
    if aws is not None:
        try:
            access_key = decrypt_optional(aws.access_key_encrypted)
            secret_key = decrypt_optional(aws.secret_key_encrypted)
        except InvalidToken:
            raise CredentialExpiredError("Stored AWS keys cannot be decrypted with the current SECRET_KEY")
        return S3Storage(
            access_key=access_key,
            secret_key=secret_key,
            bucket_name=aws.bucket_name,
            region=aws.region,
        )

    return None


def create_audit_log(uploader) -> Optional[SheetsAuditLog]:
    """Sheets audit log, available when uploading to Drive with a sheet id configured."""
    if not isinstance(uploader, DriveStorage):
        return None

    sheet_id = uploader.oauth.settings.sheet_id
    if not sheet_id:
        return None

    return SheetsAuditLog(uploader.oauth, sheet_id, timeout=current_app.config['AUDIT_TIMEOUT'])
