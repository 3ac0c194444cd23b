#!/usr/bin/env python3
"""
Basic usage examples for Resumable Storage.

This script demonstrates the most common operations:
- Uploading a file with progress reporting
- Interrupting an upload and resuming it from its checkpoint
- Error handling

Setup:
    export RESUMABLE_STORAGE_UPTOKEN='your_upload_token'
    python examples/basic_usage.py
"""

import os
import tempfile

from resumable_storage import (
    AuthenticationError,
    ResumableStorageAPI,
    UploadCancelledError,
    UploadError,
)


def main():
    """Demonstrate basic Resumable Storage operations."""

    # Initialize API (requires RESUMABLE_STORAGE_UPTOKEN environment variable)
    try:
        api = ResumableStorageAPI()
        print("Successfully initialized Resumable Storage API")
    except AuthenticationError:
        print("Authentication failed. Please set RESUMABLE_STORAGE_UPTOKEN environment variable")
        return

    with tempfile.NamedTemporaryFile(suffix=".bin", delete=False) as f:
        f.write(os.urandom(12 * 1024 * 1024))
        test_file_path = f.name

    try:
        with api:
            print("\n1. Uploading a 12 MB file...")
            demonstrate_upload(api, test_file_path)

            print("\n2. Interrupting and resuming an upload...")
            demonstrate_resume(api, test_file_path)
    finally:
        os.unlink(test_file_path)


def demonstrate_upload(api: ResumableStorageAPI, path: str):
    """Upload a file and print progress."""

    def on_progress(key, percent):
        print(f"   {key}: {percent:6.1%}", end="\r")

    try:
        result = api.upload_file(
            path,
            "demo/basic-upload.bin",
            params={"x:source": "basic_usage"},
            progress_callback=on_progress,
        )
        print(f"\n   Uploaded {result.key} ({result.hash}) at {result.speed_mbps:.2f} MB/s")
    except UploadError as e:
        print(f"\n   Upload failed: {e}")


def demonstrate_resume(api: ResumableStorageAPI, path: str):
    """Cancel an upload halfway, inspect its checkpoint and finish it."""
    key = "demo/resumed-upload.bin"
    state = {"percent": 0.0}

    def on_progress(_key, percent):
        state["percent"] = percent

    try:
        api.upload_file(
            path,
            key,
            progress_callback=on_progress,
            cancellation_signal=lambda: state["percent"] >= 0.5,
        )
    except UploadCancelledError:
        print(f"   Cancelled at {state['percent']:.0%}")

    checkpoint = api.get_checkpoint(path, key)
    if checkpoint:
        print(f"   Checkpoint: {checkpoint.offset}/{checkpoint.size} bytes acknowledged")

    try:
        result = api.upload_file(path, key)
        print(f"   Resumed and completed: {result.key}")
    except UploadError as e:
        print(f"   Resume failed: {e}")


if __name__ == "__main__":
    main()
