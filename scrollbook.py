#!/usr/bin/env python3
"""
scrollbook — Open TXT and EPUB books as lazily loaded, size-bounded layers.

Quick start:
  python scrollbook.py "The Inimitable Jeeves.epub" --list
  python scrollbook.py novel.txt --chapters 1-3
  python scrollbook.py book.epub --chapters 5 --stats
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from tqdm import tqdm


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Read TXT and EPUB books chapter by chapter through the layer cache",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List chapters, load nothing:
  python scrollbook.py book.epub --list

  # Print chapters 2 to 4:
  python scrollbook.py novel.txt --chapters 2-4

  # Save the cover image:
  python scrollbook.py book.epub --list --cover cover.jpg
        """,
    )
    parser.add_argument("input_path", type=Path, help="Path to an EPUB or TXT file")
    parser.add_argument(
        "--list", action="store_true",
        help="List chapters without loading their content",
    )
    parser.add_argument(
        "--chapters", type=str, default=None, metavar="RANGE",
        help="Print only these chapters, e.g. '1-3' or '5' (default: all)",
    )
    parser.add_argument(
        "--cover", type=Path, default=None, metavar="PATH",
        help="Write the book's cover image to PATH",
    )
    parser.add_argument(
        "--stats", action="store_true",
        help="Print chapter cache statistics after reading",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Log cache and parser activity",
    )
    return parser.parse_args()


def parse_chapter_range(range_str: str) -> range:
    """Parse '3-7' or '5' into a range (1-indexed, inclusive)."""
    if "-" in range_str:
        start, end = range_str.split("-", 1)
        return range(int(start), int(end) + 1)
    n = int(range_str)
    return range(n, n + 1)


def print_chapter_list(book) -> None:
    print(f"Title:  {book.title}")
    print(f"Author: {book.author}")
    print(f"Format: {book.format.value}")
    print(f"Cover:  {'yes' if book.cover else 'no'}")
    print(f"\nFound {len(book.chapters)} chapters:")
    print("-" * 70)
    for ch in book.chapters:
        print(f"  {ch.id + 1:3d}. {ch.title}")
    print("-" * 70)
    print()


def format_layers(layers) -> list[str]:
    lines = []
    for layer in layers:
        for offset, para in enumerate(layer.paragraphs):
            lines.append(f"[{layer.start_index + offset}] {para}")
        if layer.image is not None:
            index = layer.start_index + len(layer.paragraphs)
            lines.append(f"[{index}] [image {layer.image.path} {layer.image.media_type} {layer.image.size} bytes]")
    return lines


async def read_chapters(book, chapter_ids: list[int], show_stats: bool) -> None:
    from session import ReadingSession

    session = ReadingSession()
    session.open(book)
    try:
        for chapter_id in tqdm(chapter_ids, desc="  Reading", unit="chapter", disable=len(chapter_ids) < 2):
            layers = await session.goto_chapter(chapter_id)
            tqdm.write(f"\n=== {chapter_id + 1}. {book.chapters[chapter_id].title} ===")
            for line in format_layers(layers):
                tqdm.write(line)
        await session.cache.wait_for_prefetch()
        if show_stats:
            stats = session.cache.stats()
            print(f"\nCache: {stats.size}/{stats.max_size} chapters resident {list(stats.cached_chapters)}")
    finally:
        session.close()


def main():
    args = parse_args()
    load_dotenv()

    import config
    from parsers import parse_file

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print(f"Parsing: {args.input_path}")
    try:
        book = parse_file(args.input_path)
    except (OSError, ValueError) as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    if args.cover:
        if book.cover:
            args.cover.parent.mkdir(parents=True, exist_ok=True)
            args.cover.write_bytes(book.cover)
            print(f"Cover written: {args.cover}")
        else:
            print("No cover image found.")

    if args.list:
        print_chapter_list(book)
        return

    if args.chapters:
        chapter_range = parse_chapter_range(args.chapters)
        chapter_ids = [ch.id for ch in book.chapters if ch.id + 1 in chapter_range]
        if not chapter_ids:
            print(f"ERROR: No chapters matched range '{args.chapters}' (book has {len(book.chapters)} chapters)")
            sys.exit(1)
    else:
        chapter_ids = [ch.id for ch in book.chapters]

    asyncio.run(read_chapters(book, chapter_ids, args.stats))


if __name__ == "__main__":
    main()
