"""
Image renaming pipeline.

This package provides a batch pipeline for:
- Scanning folders and fingerprinting images by content
- Detecting duplicate files
- Generating AI suggested names and descriptions
- Renaming files locally and in blob storage
- Tracking every run as a job with per-item progress
- Exporting a project's current files as a ZIP archive
"""

from pipeline.file_scanner import FileScanner
from pipeline.metadata_extractor import MetadataExtractor
from pipeline.ai_tagger import AITagger, ImageAnalyzer
from pipeline.blob_store import BlobStore, LocalBlobStore, GCSBlobStore
from pipeline.jobs import Job, JobStatus, JobTracker, JobType
from pipeline.storage_handler import StorageHandler
from pipeline.scan_pipeline import ScanPipeline
from pipeline.analyze_pipeline import AnalyzePipeline
from pipeline.rename_pipeline import RenamePipeline
from pipeline.archive import build_archive
from pipeline.processor import ImageProcessor, create_processor

__all__ = [
    "FileScanner",
    "MetadataExtractor",
    "AITagger",
    "ImageAnalyzer",
    "BlobStore",
    "LocalBlobStore",
    "GCSBlobStore",
    "Job",
    "JobStatus",
    "JobTracker",
    "JobType",
    "StorageHandler",
    "ScanPipeline",
    "AnalyzePipeline",
    "RenamePipeline",
    "build_archive",
    "ImageProcessor",
    "create_processor",
]
