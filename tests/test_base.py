import unittest

from models import BookFormat, ContentLayer, ImageResource, UnifiedBook, UnifiedChapter
from parsers.base import ChapterNotFoundError, chunk_paragraphs, decode_text, get_chapter


def assert_continuous(test, layers, start=0):
    expected = start
    for layer in layers:
        test.assertEqual(layer.start_index, expected)
        expected = layer.start_index + len(layer.paragraphs) + (1 if layer.image else 0)
    return expected


class TestChunkParagraphs(unittest.TestCase):

    def test_single_oversized_paragraph_gets_its_own_layer(self):
        para = "x" * 16000
        layers, next_index = chunk_paragraphs([para])
        self.assertEqual(len(layers), 1)
        self.assertEqual(layers[0].paragraphs, [para])
        self.assertEqual(next_index, 1)

    def test_three_7000_char_paragraphs_make_two_layers(self):
        a, b, c = "a" * 7000, "b" * 7000, "c" * 7000
        layers, next_index = chunk_paragraphs([a, b, c])
        self.assertEqual([layer.paragraphs for layer in layers], [[a, b], [c]])
        self.assertEqual([layer.start_index for layer in layers], [0, 2])
        self.assertEqual(next_index, 3)

    def test_round_trip_size_bound_and_continuity(self):
        paragraphs = [("p%d " % i) * (i * 137 % 2400 + 1) for i in range(300)]
        paragraphs.insert(40, "z" * 20000)
        layers, next_index = chunk_paragraphs(paragraphs, start_index=17)

        self.assertEqual([p for layer in layers for p in layer.paragraphs], paragraphs)
        for layer in layers:
            if len(layer.paragraphs) > 1:
                self.assertLessEqual(layer.text_length, 15000)
        self.assertEqual(assert_continuous(self, layers, 17), next_index)
        self.assertEqual(next_index, 17 + len(paragraphs))

    def test_image_attaches_to_first_layer_only(self):
        image = ImageResource(b"img", "image/png", "/a.png")
        paragraphs = ["a" * 9000, "b" * 9000, "c" * 9000]
        layers, next_index = chunk_paragraphs(paragraphs, 5, image)

        self.assertIs(layers[0].image, image)
        self.assertTrue(all(layer.image is None for layer in layers[1:]))
        # the image takes the index right after the first layer's paragraphs
        self.assertEqual(layers[1].start_index, 5 + 1 + 1)
        self.assertEqual(next_index, 5 + 3 + 1)
        assert_continuous(self, layers, 5)

    def test_image_without_paragraphs(self):
        image = ImageResource(b"img")
        layers, next_index = chunk_paragraphs([], 4, image)
        self.assertEqual(layers, [ContentLayer(paragraphs=[], start_index=4, image=image)])
        self.assertEqual(next_index, 5)

    def test_nothing_to_chunk(self):
        self.assertEqual(chunk_paragraphs([], 9), ([], 9))

    def test_custom_limit(self):
        layers, _ = chunk_paragraphs(["aa", "bb", "cc"], max_length=4)
        self.assertEqual([layer.paragraphs for layer in layers], [["aa", "bb"], ["cc"]])

    def test_input_is_not_mutated(self):
        paragraphs = ["one", "two"]
        layers, _ = chunk_paragraphs(paragraphs)
        layers[0].paragraphs.append("three")
        self.assertEqual(paragraphs, ["one", "two"])


class TestDecodeText(unittest.TestCase):

    def test_utf8(self):
        self.assertEqual(decode_text("第一章 héllo".encode("utf-8")), "第一章 héllo")

    def test_utf8_bom_is_dropped(self):
        self.assertEqual(decode_text(b"\xef\xbb\xbfhello"), "hello")

    def test_gbk_fallback(self):
        text = "第一章 开始\n天下大势"
        self.assertEqual(decode_text(text.encode("gbk")), text)

    def test_lossy_fallback_never_raises(self):
        # 0x80 is invalid both as UTF-8 and as a gb18030 lead byte
        result = decode_text(b"ok \x80")
        self.assertTrue(result.startswith("ok "))
        self.assertIn("�", result)


class TestGetChapter(unittest.TestCase):

    def setUp(self):
        self.book = UnifiedBook(
            title="Two",
            author="Unknown",
            format=BookFormat.PLAIN,
            chapters=[UnifiedChapter(id=0, title="a"), UnifiedChapter(id=1, title="b")],
            raw_source=b"",
        )

    def test_valid_id(self):
        self.assertEqual(get_chapter(self.book, 1).title, "b")

    def test_out_of_range_ids_are_rejected(self):
        for bad in (-1, 2, 100):
            with self.assertRaises(ChapterNotFoundError):
                get_chapter(self.book, bad)


class TestImageResource(unittest.TestCase):

    def test_release_happens_once(self):
        image = ImageResource(b"12345", "image/png", "/x.png")
        self.assertEqual(image.size, 5)
        self.assertTrue(image.release())
        self.assertFalse(image.release())
        self.assertTrue(image.released)
        with self.assertRaises(RuntimeError):
            image.data

    def test_handles_are_unique(self):
        self.assertNotEqual(ImageResource(b"a").handle_id, ImageResource(b"a").handle_id)


if __name__ == "__main__":
    unittest.main()
