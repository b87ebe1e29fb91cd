"""
Crawler core components.
"""

from .job_queue import JobQueue, Job, JobKind, JobState
from .fetcher import WebFetcher, FetchResult, FetchError
from .extractor import (
    ListingExtractor, DetailExtractor, Article, PageType, classify_page,
    UnknownPageTypeError, ValidationError, NoArticlesFoundError
)

__all__ = [
    'JobQueue', 'Job', 'JobKind', 'JobState',
    'WebFetcher', 'FetchResult', 'FetchError',
    'ListingExtractor', 'DetailExtractor', 'Article', 'PageType', 'classify_page',
    'UnknownPageTypeError', 'ValidationError', 'NoArticlesFoundError'
]
