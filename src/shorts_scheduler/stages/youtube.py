"""YouTube Data API v3 uploader.

Credentials are rebuilt from the job's refresh token on every upload, so a
token revoked between scheduling and publish time fails only that job.
"""

import asyncio
import logging
import mimetypes
import os
from typing import Optional

from google.auth.exceptions import GoogleAuthError, RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload

from ..errors import UploadFailure
from ..models import UploadConfig
from .base import PublishMetadata, Uploader

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/youtube.upload"]
TITLE_LIMIT = 100
DESCRIPTION_LIMIT = 5000
WATCH_URL = "https://www.youtube.com/watch?v={video_id}"


def _get_video_mimetype(video_path: str) -> str:
    mime_type, _ = mimetypes.guess_type(video_path)
    if mime_type and mime_type.startswith("video/"):
        return mime_type
    return "video/mp4"


def build_video_body(metadata: PublishMetadata, category_id: str = "22") -> dict:
    """Request body for videos.insert."""
    return {
        "snippet": {
            "title": metadata.title[:TITLE_LIMIT],
            "description": metadata.description[:DESCRIPTION_LIMIT],
            "tags": list(metadata.tags),
            "categoryId": category_id,
        },
        "status": {
            "privacyStatus": metadata.privacy,
            "selfDeclaredMadeForKids": False,
        },
    }


class YouTubeUploader(Uploader):
    """Uploader that publishes through the YouTube Data API."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        config: Optional[UploadConfig] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.config = config or UploadConfig()

    @classmethod
    def from_config(cls, config: UploadConfig) -> "YouTubeUploader":
        return cls(
            os.environ.get(config.client_id_env, ""),
            os.environ.get(config.client_secret_env, ""),
            config,
        )

    async def upload(self, file_path: str, metadata: PublishMetadata, credential_ref: str) -> str:
        return await asyncio.to_thread(self.upload_sync, file_path, metadata, credential_ref)

    def authenticate(self, credential_ref: str) -> Credentials:
        """Build and refresh credentials from a refresh token."""
        if not credential_ref:
            raise UploadFailure("authentication failed: no refresh token for this job")
        if not (self.client_id and self.client_secret):
            raise UploadFailure("authentication failed: YouTube client id/secret not configured")

        creds = Credentials(
            token=None,
            refresh_token=credential_ref,
            token_uri=self.config.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=SCOPES,
        )
        try:
            creds.refresh(Request())
        except (RefreshError, GoogleAuthError) as e:
            raise UploadFailure(f"authentication failed: {e}") from e
        return creds

    def upload_sync(self, file_path: str, metadata: PublishMetadata, credential_ref: str) -> str:
        if not os.path.exists(file_path):
            raise UploadFailure(f"Video file not found: {file_path}")
        if os.path.getsize(file_path) == 0:
            raise UploadFailure(f"Video file is empty: {file_path}")

        creds = self.authenticate(credential_ref)

        try:
            youtube = build("youtube", "v3", credentials=creds, cache_discovery=False)
            body = build_video_body(metadata, self.config.category_id)
            insert_request = youtube.videos().insert(
                part=",".join(body.keys()),
                body=body,
                media_body=MediaFileUpload(
                    file_path,
                    mimetype=_get_video_mimetype(file_path),
                    chunksize=-1,
                    resumable=True,
                ),
            )
            response = insert_request.execute()
        except HttpError as e:
            raise UploadFailure(f"YouTube API error: {e}") from e
        except (OSError, GoogleAuthError) as e:
            raise UploadFailure(f"Upload failed: {e}") from e

        video_id = response.get("id") if response else None
        if not video_id:
            raise UploadFailure("YouTube API did not return a video id")

        url = WATCH_URL.format(video_id=video_id)
        logger.info(f"Published {os.path.basename(file_path)} → {url}")
        return url
