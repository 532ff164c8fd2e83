"""
External collaborators: object storage, Claude completions and Whisper
transcription, each behind a narrow async interface.
"""

from studyflow.services.clients.ai import CompletionClient
from studyflow.services.clients.storage import (
    HttpObjectStorage,
    LocalObjectStorage,
    ObjectStorage,
    build_storage,
    normalize_storage_path,
)
from studyflow.services.clients.transcription import WhisperTranscriber

__all__ = [
    "CompletionClient",
    "WhisperTranscriber",
    "ObjectStorage",
    "LocalObjectStorage",
    "HttpObjectStorage",
    "build_storage",
    "normalize_storage_path",
]
