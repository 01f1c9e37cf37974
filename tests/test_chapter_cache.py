import asyncio
import itertools
import threading
import unittest

from chapter_cache import ChapterCache
from models import BookFormat, ContentLayer, ImageResource, UnifiedBook, UnifiedChapter
from parsers import parse_book
from parsers.base import ChapterNotFoundError


def make_book(n):
    return UnifiedBook(
        title="Probe",
        author="Unknown",
        format=BookFormat.PLAIN,
        chapters=[UnifiedChapter(id=i, title=f"Chapter {i + 1}") for i in range(n)],
        raw_source=b"",
    )


class ProbeLoader:
    """Counts loads and hands out one text layer plus one image per chapter."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []
        self.images = {}

    def __call__(self, book, chapter_id):
        self.calls.append(chapter_id)
        if chapter_id in self.fail:
            raise RuntimeError(f"cannot load {chapter_id}")
        image = ImageResource(b"png", "image/png", f"/img{chapter_id}.png")
        self.images.setdefault(chapter_id, []).append(image)
        return [ContentLayer([f"text of {chapter_id}"], 0, image)]

    def loads(self, chapter_id):
        return self.calls.count(chapter_id)


def fake_clock():
    counter = itertools.count()
    return lambda: next(counter)


NO_PREFETCH = (0, 0)


class TestChapterCache(unittest.IsolatedAsyncioTestCase):

    async def test_second_get_is_a_hit(self):
        loader = ProbeLoader()
        book = make_book(3)
        cache = ChapterCache(book, loader=loader, prefetch_window=NO_PREFETCH)

        first = await cache.get_chapter(1)
        second = await cache.get_chapter(1)

        self.assertIs(first, second)
        self.assertEqual(loader.loads(1), 1)
        self.assertTrue(book.chapters[1].is_loaded)
        self.assertIs(book.chapters[1].layers, first)

    async def test_out_of_range_is_an_error(self):
        cache = ChapterCache(make_book(3), loader=ProbeLoader())
        for bad in (-1, 3):
            with self.assertRaises(ChapterNotFoundError):
                await cache.get_chapter(bad)
        self.assertEqual(len(cache), 0)

    async def test_foreground_error_propagates_without_retry(self):
        loader = ProbeLoader(fail={2})
        cache = ChapterCache(make_book(5), loader=loader, prefetch_window=NO_PREFETCH)
        with self.assertRaises(RuntimeError):
            await cache.get_chapter(2)
        self.assertEqual(loader.loads(2), 1)
        self.assertNotIn(2, cache)
        self.assertFalse(cache.book.chapters[2].is_loaded)

    async def test_lru_eviction(self):
        loader = ProbeLoader()
        book = make_book(10)
        cache = ChapterCache(book, capacity=3, loader=loader, prefetch_window=NO_PREFETCH, clock=fake_clock())

        for chapter_id in (0, 1, 2):
            await cache.get_chapter(chapter_id)
        await cache.get_chapter(0)  # 1 is now the least recently used
        await cache.get_chapter(3)

        self.assertEqual(set(cache.stats().cached_chapters), {0, 2, 3})
        self.assertFalse(book.chapters[1].is_loaded)
        self.assertEqual(book.chapters[1].layers, [])
        self.assertTrue(loader.images[1][0].released)
        self.assertFalse(loader.images[0][0].released)

    async def test_ties_evict_the_oldest_insertion(self):
        cache = ChapterCache(make_book(5), capacity=2, loader=ProbeLoader(),
                             prefetch_window=NO_PREFETCH, clock=lambda: 0.0)
        for chapter_id in (3, 1, 4):
            await cache.get_chapter(chapter_id)
        self.assertEqual(cache.stats().cached_chapters, (1, 4))

    async def test_capacity_is_never_exceeded(self):
        cache = ChapterCache(make_book(12), loader=ProbeLoader(), prefetch_delay=0)
        for chapter_id in (0, 5, 6, 11, 3, 2, 9, 9, 7, 1, 10, 4):
            await cache.get_chapter(chapter_id)
            self.assertLessEqual(len(cache), 5)
            await cache.wait_for_prefetch()
            self.assertLessEqual(len(cache), 5)
            self.assertIn(chapter_id, cache)
        self.assertEqual(cache.stats().max_size, 5)

    async def test_evicted_chapter_is_loaded_again(self):
        loader = ProbeLoader()
        cache = ChapterCache(make_book(4), capacity=1, loader=loader, prefetch_window=NO_PREFETCH)
        await cache.get_chapter(0)
        await cache.get_chapter(1)
        await cache.get_chapter(0)
        self.assertEqual(loader.loads(0), 2)
        self.assertTrue(loader.images[0][0].released)
        self.assertFalse(loader.images[0][1].released)

    async def test_prefetch_window(self):
        cache = ChapterCache(make_book(10), loader=ProbeLoader(), prefetch_delay=60)

        await cache.get_chapter(5)
        self.assertEqual(cache.pending_prefetch, {4, 6, 7})
        # 5 is resident and 6 is already queued
        self.assertEqual(cache.prefetch_targets(4), [3])
        self.assertEqual(cache.prefetch_targets(0), [1, 2])
        self.assertEqual(cache.prefetch_targets(9), [8])
        cache.clear()

    async def test_prefetch_at_the_edges(self):
        cache = ChapterCache(make_book(3), loader=ProbeLoader(), prefetch_delay=60)
        await cache.get_chapter(0)
        self.assertEqual(cache.pending_prefetch, {1, 2})
        cache.clear()

        cache = ChapterCache(make_book(1), loader=ProbeLoader(), prefetch_delay=60)
        await cache.get_chapter(0)
        self.assertEqual(cache.pending_prefetch, set())

    async def test_current_chapter_and_neighbours_become_resident(self):
        loader = ProbeLoader()
        cache = ChapterCache(make_book(10), loader=loader, prefetch_delay=0)

        await cache.get_chapter(2)
        await cache.wait_for_prefetch()

        self.assertEqual(set(cache.stats().cached_chapters), {1, 2, 3, 4})
        self.assertEqual(sorted(loader.calls), [1, 2, 3, 4])
        self.assertEqual(cache.pending_prefetch, set())

    async def test_prefetched_chapter_is_a_hit(self):
        loader = ProbeLoader()
        cache = ChapterCache(make_book(10), loader=loader, prefetch_delay=0)
        await cache.get_chapter(2)
        await cache.wait_for_prefetch()
        await cache.get_chapter(3)
        self.assertEqual(loader.loads(3), 1)

    async def test_prefetch_failure_does_not_stop_the_batch(self):
        loader = ProbeLoader(fail={3})
        cache = ChapterCache(make_book(10), loader=loader, prefetch_delay=0)

        with self.assertLogs("chapter_cache", level="WARNING") as logs:
            await cache.get_chapter(2)
            await cache.wait_for_prefetch()

        self.assertEqual(set(cache.stats().cached_chapters), {1, 2, 4})
        self.assertTrue(any("chapter 3" in line for line in logs.output))

    async def test_concurrent_requests_share_one_load(self):
        loader = ProbeLoader()
        cache = ChapterCache(make_book(5), loader=loader, prefetch_window=NO_PREFETCH)
        first, second = await asyncio.gather(cache.get_chapter(3), cache.get_chapter(3))
        self.assertIs(first, second)
        self.assertEqual(loader.loads(3), 1)

    async def test_foreground_request_joins_a_running_prefetch(self):
        gate = threading.Event()
        loader = ProbeLoader()

        def gated_loader(book, chapter_id):
            if chapter_id == 3:
                gate.wait(5)
            return loader(book, chapter_id)

        cache = ChapterCache(make_book(5), loader=gated_loader, prefetch_window=(0, 1), prefetch_delay=0)
        await cache.get_chapter(2)
        while 3 not in cache._loading:
            await asyncio.sleep(0.01)

        request = asyncio.create_task(cache.get_chapter(3))
        await asyncio.sleep(0.01)
        gate.set()
        layers = await request
        await cache.wait_for_prefetch()

        self.assertEqual(loader.loads(3), 1)
        self.assertIs(cache.book.chapters[3].layers, layers)

    async def test_clear_releases_everything(self):
        loader = ProbeLoader()
        book = make_book(10)
        cache = ChapterCache(book, loader=loader, prefetch_delay=0)
        await cache.get_chapter(2)
        await cache.wait_for_prefetch()

        cache.clear()

        self.assertEqual(cache.stats().size, 0)
        self.assertEqual(cache.stats().cached_chapters, ())
        self.assertEqual(cache.pending_prefetch, set())
        self.assertTrue(all(img.released for imgs in loader.images.values() for img in imgs))
        self.assertFalse(any(ch.is_loaded for ch in book.chapters))

    async def test_clear_forgets_queued_prefetch(self):
        loader = ProbeLoader()
        cache = ChapterCache(make_book(10), loader=loader, prefetch_delay=0.01)
        await cache.get_chapter(5)
        cache.clear()
        await cache.wait_for_prefetch()
        self.assertEqual(loader.calls, [5])
        self.assertEqual(len(cache), 0)

    async def test_load_finishing_after_clear_is_discarded(self):
        gate = threading.Event()
        images = []

        def slow_loader(book, chapter_id):
            gate.wait(5)
            image = ImageResource(b"png")
            images.append(image)
            return [ContentLayer(["slow"], 0, image)]

        cache = ChapterCache(make_book(3), loader=slow_loader, prefetch_window=NO_PREFETCH)
        task = asyncio.create_task(cache.get_chapter(0))
        await asyncio.sleep(0.05)
        cache.clear()
        gate.set()
        layers = await task

        self.assertEqual(layers[0].paragraphs, ["slow"])
        self.assertTrue(images[0].released)
        self.assertEqual(len(cache), 0)
        self.assertFalse(cache.book.chapters[0].is_loaded)

    async def test_stats(self):
        cache = ChapterCache(make_book(6), capacity=4, loader=ProbeLoader(), prefetch_window=NO_PREFETCH)
        await cache.get_chapter(4)
        await cache.get_chapter(1)
        stats = cache.stats()
        self.assertEqual((stats.size, stats.max_size, stats.cached_chapters), (2, 4, (4, 1)))

    async def test_with_real_adapter(self):
        text = "\n".join(f"Chapter {i}\nbody {i}" for i in range(1, 8))
        book = parse_book(text.encode("utf-8"), "seven.txt")
        cache = ChapterCache(book, prefetch_delay=0)

        layers = await cache.get_chapter(3)
        await cache.wait_for_prefetch()

        self.assertEqual(layers[0].paragraphs, ["body 4"])
        self.assertEqual(set(cache.stats().cached_chapters), {2, 3, 4, 5})
        self.assertEqual(book.chapters[5].layers[0].paragraphs, ["body 6"])


if __name__ == "__main__":
    unittest.main()
