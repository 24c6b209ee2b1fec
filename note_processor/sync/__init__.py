"""Artifact upload to Google Drive, directly or through the notes backend."""
