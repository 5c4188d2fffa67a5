# test_image_resolver.py
# Figure placeholder resolution, fetching and image diagnostics

import unittest
import threading
import tempfile
import shutil
import sys
import os
from unittest import mock

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

from image_resolver import (
    ImageResolver, AssetFetcher, FigureResolution, register_image,
    find_figure_placeholders, find_unreferenced_images, find_unmatched_placeholders,
)


class RecordingFetcher:
    """Returns b'<placeholder_id>' and records each call"""

    def __init__(self, fail=(), block=(), release=None):
        self.calls = []
        self.fail = set(fail)
        self.block = set(block)
        self.release = release
        self.lock = threading.Lock()

    def __call__(self, asset, timeout=None):
        pid = asset['placeholder_id']
        with self.lock:
            self.calls.append(pid)
        if pid in self.block:
            self.release.wait(5)
        if pid in self.fail:
            raise IOError(f"cannot fetch {pid}")
        return pid.encode()


def asset(pid, chapter, caption=''):
    return {'placeholder_id': pid, 'chapter_number': chapter, 'caption': caption}


class TestResolve(unittest.TestCase):

    def test_exact_match(self):
        resolver = ImageResolver([asset('figure1.1', 1, 'Site map')], fetcher=RecordingFetcher())
        result = resolver.resolve(1, 1)
        self.assertTrue(result.found)
        self.assertEqual(result.data, b'figure1.1')
        self.assertEqual(result.caption, 'Site map')
        self.assertEqual(result.label, 'Figure 1.1')

    def test_positional_fallback_within_chapter(self):
        assets = [asset('upload-a', 2), asset('upload-b', 2), asset('upload-c', 3)]
        resolver = ImageResolver(assets, fetcher=RecordingFetcher())
        self.assertEqual(resolver.resolve(2, 2).data, b'upload-b')
        self.assertFalse(resolver.resolve(2, 3).found)

    def test_exact_match_preferred_over_position(self):
        assets = [asset('figure1.2', 1), asset('figure1.1', 1)]
        resolver = ImageResolver(assets, fetcher=RecordingFetcher())
        self.assertEqual(resolver.resolve(1, 1).data, b'figure1.1')

    def test_missing_asset(self):
        result = ImageResolver([], fetcher=RecordingFetcher()).resolve(3, 1)
        self.assertFalse(result.found)
        self.assertEqual(result.fallback_text, '[Figure 3.1 — image not available]')

    def test_fetch_failure_is_missing(self):
        resolver = ImageResolver([asset('figure1.1', 1)], fetcher=RecordingFetcher(fail=['figure1.1']))
        result = resolver.resolve(1, 1)
        self.assertFalse(result.found)
        self.assertEqual(result.reason, 'payload unavailable')

    def test_payload_cached(self):
        fetcher = RecordingFetcher()
        resolver = ImageResolver([asset('figure1.1', 1)], fetcher=fetcher)
        resolver.resolve(1, 1)
        resolver.resolve(1, 1)
        self.assertEqual(fetcher.calls, ['figure1.1'])

    def test_missing_factory(self):
        result = FigureResolution.missing(1, 4, 'no matching asset')
        self.assertFalse(result.found)
        self.assertEqual(result.caption, '')


class TestPrefetch(unittest.TestCase):

    def setUp(self):
        self.release = threading.Event()

    def tearDown(self):
        self.release.set()

    def test_prefetch_fetches_each_asset_once(self):
        fetcher = RecordingFetcher()
        assets = [asset(f"figure1.{n}", 1) for n in range(1, 5)]
        resolver = ImageResolver(assets, fetcher=fetcher, max_workers=2)

        resolver.prefetch([(1, 1), (1, 2), (1, 2), (1, 3), (1, 4), (1, 9)])
        self.assertEqual(sorted(fetcher.calls), ['figure1.1', 'figure1.2', 'figure1.3', 'figure1.4'])

        results = [resolver.resolve(1, n) for n in range(1, 5)]
        self.assertEqual([r.data for r in results], [b'figure1.1', b'figure1.2', b'figure1.3', b'figure1.4'])
        self.assertEqual(len(fetcher.calls), 4)

    def test_slow_fetch_times_out_as_missing(self):
        fetcher = RecordingFetcher(block=['figure1.2'], release=self.release)
        assets = [asset('figure1.1', 1), asset('figure1.2', 1), asset('figure1.3', 1)]
        resolver = ImageResolver(assets, fetcher=fetcher, timeout=0.2, max_workers=3)

        resolver.prefetch([(1, 1), (1, 2), (1, 3)])

        self.assertTrue(resolver.resolve(1, 1).found)
        self.assertFalse(resolver.resolve(1, 2).found)
        self.assertTrue(resolver.resolve(1, 3).found)


class FakeResponse:
    def __init__(self, content, status=200):
        self.content = content
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise IOError(f"HTTP {self.status}")


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def get(self, url, timeout=None):
        self.requests.append((url, timeout))
        return self.response


class TestAssetFetcher(unittest.TestCase):

    def setUp(self):
        self.folder = tempfile.mkdtemp()
        with open(os.path.join(self.folder, 'chart.png'), 'wb') as f:
            f.write(b'local-bytes')

    def tearDown(self):
        shutil.rmtree(self.folder, ignore_errors=True)

    def test_inline_data(self):
        self.assertEqual(AssetFetcher()({'data': b'inline'}), b'inline')

    def test_url_uses_session_with_timeout(self):
        session = FakeSession(FakeResponse(b'remote'))
        fetcher = AssetFetcher(session=session)
        self.assertEqual(fetcher({'url': 'https://cdn.example.com/a.png'}, timeout=3), b'remote')
        self.assertEqual(session.requests, [('https://cdn.example.com/a.png', 3)])

    def test_default_fetcher_has_no_shared_session(self):
        self.assertIsNone(AssetFetcher().session)

    def test_prefetch_without_session_calls_requests_per_fetch(self):
        assets = [
            {'placeholder_id': 'figure1.1', 'chapter_number': 1, 'url': 'https://cdn.example.com/a.png'},
            {'placeholder_id': 'figure1.2', 'chapter_number': 1, 'url': 'https://cdn.example.com/b.png'},
        ]
        with mock.patch('image_resolver.requests.get',
                        side_effect=lambda url, timeout=None: FakeResponse(url.encode('ascii'))) as get:
            resolver = ImageResolver(assets, timeout=4, max_workers=2)
            resolver.prefetch([(1, 1), (1, 2)])

        self.assertEqual(resolver.resolve(1, 2).data, b'https://cdn.example.com/b.png')
        self.assertCountEqual(get.call_args_list, [
            mock.call('https://cdn.example.com/a.png', timeout=4),
            mock.call('https://cdn.example.com/b.png', timeout=4),
        ])

    def test_url_error_status_raises(self):
        fetcher = AssetFetcher(session=FakeSession(FakeResponse(b'', status=404)))
        with self.assertRaises(IOError):
            fetcher({'url': 'https://cdn.example.com/missing.png'})

    def test_storage_key_reads_local_folder(self):
        fetcher = AssetFetcher(asset_folder=self.folder)
        self.assertEqual(fetcher({'storage_key': 'chart.png'}), b'local-bytes')

    def test_storage_key_cannot_escape_folder(self):
        fetcher = AssetFetcher(asset_folder=self.folder)
        with self.assertRaises(LookupError):
            fetcher({'storage_key': '../outside.png'})

    def test_asset_without_source(self):
        with self.assertRaises(LookupError):
            AssetFetcher()({'placeholder_id': 'figure1.1'})


class TestImageDiagnostics(unittest.TestCase):

    def test_register_image_numbers_per_chapter(self):
        assets = []
        first = register_image(assets, 1, 'First')
        second = register_image(assets, 1, 'Second')
        other = register_image(assets, 2, 'Other')
        self.assertEqual([first['placeholder_id'], second['placeholder_id'], other['placeholder_id']],
                         ['figure1.1', 'figure1.2', 'figure2.1'])
        self.assertEqual(len(assets), 3)

    def test_find_placeholders_in_order(self):
        body = "Intro\n{{figure1.2}}\ntext {{figure1.1}}"
        self.assertEqual(find_figure_placeholders(body), ['figure1.2', 'figure1.1'])

    def test_unreferenced_and_unmatched(self):
        assets = [asset('figure1.1', 1), asset('figure1.2', 1), asset('figure2.1', 2)]
        body = "{{figure1.1}}\n{{figure1.3}}"
        self.assertEqual([a['placeholder_id'] for a in find_unreferenced_images(body, assets, 1)],
                         ['figure1.2'])
        self.assertEqual(find_unmatched_placeholders(body, assets), ['figure1.3'])


if __name__ == '__main__':
    unittest.main()
