# image_resolver.py
# Resolve {{figureN.M}} placeholders to uploaded image assets and fetch their bytes

import os
import math
import time
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError

import requests

from block_classifier import FIGURE_PLACEHOLDER_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 10
DEFAULT_FETCH_WORKERS = 4

SUPPORTED_FORMATS = {
    'image/png': 'png',
    'image/jpeg': 'jpeg',
    'image/jpg': 'jpg',
    'image/gif': 'gif',
    'image/bmp': 'bmp',
    'image/tiff': 'tiff',
}


def placeholder_id_for(chapter_number, figure_number):
    return f"figure{chapter_number}.{figure_number}"


class FigureResolution:
    """Outcome of resolving one figure placeholder: found (asset + bytes) or missing."""

    def __init__(self, chapter, figure, asset=None, data=None, reason=None):
        self.chapter = chapter
        self.figure = figure
        self.asset = asset
        self.data = data
        self.reason = reason

    @classmethod
    def missing(cls, chapter, figure, reason):
        return cls(chapter, figure, reason=reason)

    @property
    def found(self):
        return self.asset is not None and self.data is not None

    @property
    def label(self):
        return f"Figure {self.chapter}.{self.figure}"

    @property
    def caption(self):
        return (self.asset or {}).get('caption') or ''

    @property
    def fallback_text(self):
        return f"[{self.label} — image not available]"

    def __repr__(self):
        state = 'found' if self.found else f"missing: {self.reason}"
        return f"FigureResolution({self.label}, {state})"


class AssetFetcher:
    """
    Load image bytes for an asset.

    Assets carrying inline 'data' are returned as-is, 'url' assets are
    downloaded with requests, and 'storage_key' assets are read from the
    local asset folder.
    """

    def __init__(self, asset_folder=None, session=None):
        self.asset_folder = asset_folder
        # None: each fetch calls requests.get (prefetch runs fetches on worker threads)
        self.session = session

    def __call__(self, asset, timeout=DEFAULT_FETCH_TIMEOUT):
        if asset.get('data') is not None:
            return asset['data']

        url = asset.get('url')
        if url and url.startswith(('http://', 'https://')):
            http = self.session or requests
            response = http.get(url, timeout=timeout)
            response.raise_for_status()
            return response.content

        storage_key = asset.get('storage_key')
        if storage_key and self.asset_folder:
            return self._read_local(storage_key)

        raise LookupError(f"No payload source for asset {asset.get('placeholder_id')}")

    def _read_local(self, storage_key):
        root = os.path.abspath(self.asset_folder)
        path = os.path.abspath(os.path.join(root, storage_key))
        if os.path.commonpath([root, path]) != root:
            raise LookupError(f"Storage key escapes asset folder: {storage_key}")
        with open(path, 'rb') as f:
            return f.read()


class ImageResolver:
    """
    Map figure placeholders to image assets.

    Lookup is by exact placeholder id first, then by position among the
    chapter's assets (the Nth registered image for {{figureC.N}}). The
    positional path is a heuristic and is logged whenever it is taken.
    """

    def __init__(self, assets, fetcher=None, timeout=DEFAULT_FETCH_TIMEOUT,
                 max_workers=DEFAULT_FETCH_WORKERS):
        self.assets = list(assets or [])
        self.fetcher = fetcher or AssetFetcher()
        self.timeout = timeout
        self.max_workers = max(1, max_workers)
        self._payloads = {}

        self._by_placeholder = {}
        self._by_chapter = defaultdict(list)
        for asset in self.assets:
            if asset.get('placeholder_id'):
                self._by_placeholder.setdefault(asset['placeholder_id'], asset)
            if asset.get('chapter_number') is not None:
                self._by_chapter[int(asset['chapter_number'])].append(asset)

    def find_asset(self, chapter, figure):
        asset = self._by_placeholder.get(placeholder_id_for(chapter, figure))
        if asset is not None:
            return asset

        chapter_assets = self._by_chapter.get(chapter, [])
        index = figure - 1
        if 0 <= index < len(chapter_assets):
            asset = chapter_assets[index]
            logger.warning(f"Figure {chapter}.{figure} matched by position to "
                           f"{asset.get('placeholder_id') or 'unnamed asset'}")
            return asset

        return None

    def _cache_key(self, asset):
        return asset.get('placeholder_id') or id(asset)

    def _fetch(self, asset):
        try:
            return self.fetcher(asset, timeout=self.timeout)
        except Exception as e:
            logger.warning(f"Failed to fetch image {asset.get('placeholder_id')}: {str(e)}")
            return None

    def prefetch(self, figures):
        """
        Fetch payloads for many placeholders concurrently.

        Args:
            figures: Iterable of (chapter, figure) pairs in document order

        Fetches that fail or miss the batch deadline are cached as missing.
        """
        pending = []
        for chapter, figure in figures:
            asset = self.find_asset(chapter, figure)
            if asset is None:
                continue
            key = self._cache_key(asset)
            if key in self._payloads or any(key == k for k, _ in pending):
                continue
            pending.append((key, asset))

        if not pending:
            return

        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        try:
            futures = [(key, executor.submit(self._fetch, asset)) for key, asset in pending]
            rounds = math.ceil(len(futures) / self.max_workers)
            deadline = time.monotonic() + self.timeout * rounds

            # Collect in placeholder order, whatever order they finish in
            for key, future in futures:
                try:
                    self._payloads[key] = future.result(timeout=max(0, deadline - time.monotonic()))
                except FutureTimeoutError:
                    logger.warning(f"Timed out fetching image {key}")
                    self._payloads[key] = None
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        fetched = sum(1 for key, _ in pending if self._payloads.get(key) is not None)
        logger.info(f"Prefetched {fetched}/{len(pending)} images")

    def resolve(self, chapter, figure):
        """
        Resolve {{figure<chapter>.<figure>}}.

        Returns:
            FigureResolution; never raises for missing assets or fetch errors
        """
        asset = self.find_asset(chapter, figure)
        if asset is None:
            logger.warning(f"No image asset for figure{chapter}.{figure}")
            return FigureResolution.missing(chapter, figure, 'no matching asset')

        key = self._cache_key(asset)
        if key not in self._payloads:
            self._payloads[key] = self._fetch(asset)

        data = self._payloads[key]
        if data is None:
            return FigureResolution.missing(chapter, figure, 'payload unavailable')

        return FigureResolution(chapter, figure, asset=asset, data=data)


def register_image(assets, chapter_number, caption, url=None, storage_key=None,
                   data=None, content_type='image/png'):
    """
    Append a new asset for a chapter with the next sequential figure number.

    Returns:
        The new asset dict (also appended to assets)
    """
    used = [int(a.get('figure_number') or 0) for a in assets
            if a.get('chapter_number') is not None and int(a['chapter_number']) == chapter_number]
    figure_number = max(used, default=0) + 1

    asset = {
        'placeholder_id': placeholder_id_for(chapter_number, figure_number),
        'chapter_number': chapter_number,
        'figure_number': figure_number,
        'caption': caption,
        'url': url,
        'storage_key': storage_key,
        'data': data,
        'content_type': content_type,
    }
    assets.append(asset)
    return asset


def find_figure_placeholders(body):
    """Placeholder ids in the order they appear in a chapter body."""
    return [placeholder_id_for(int(m.group(1)), int(m.group(2)))
            for m in FIGURE_PLACEHOLDER_PATTERN.finditer(body or '')]


def find_unreferenced_images(body, assets, chapter_number):
    """Assets uploaded for a chapter that its body never places."""
    placed = set(find_figure_placeholders(body))
    return [a for a in assets
            if a.get('chapter_number') is not None
            and int(a['chapter_number']) == chapter_number
            and a.get('placeholder_id') not in placed]


def find_unmatched_placeholders(body, assets):
    """Placeholders in a body with no asset registered under that exact id."""
    known = {a.get('placeholder_id') for a in assets}
    return [pid for pid in find_figure_placeholders(body) if pid not in known]
