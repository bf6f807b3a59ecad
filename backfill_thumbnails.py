#!/usr/bin/env python3
"""
Standalone command-line script to render missing thumbnails.

Every catalogued video (and, with --comics, every CBZ archive) that has no
`thumbnails/<filename>.jpg` gets one. Videos use the frame at 00:00:05, or
the first frame for clips shorter than that. Failures are reported at the
end and never stop the run.

Run it from the directory that holds `config.json`, or point TAGGART_CONFIG
at the config file.
"""

import argparse
import logging
import sys

from tqdm import tqdm

from taggart.config import ConfigStore
from taggart.database import make_engine, make_session_factory
from taggart.maintenance import missing_thumbnails
from taggart.media import DefaultThumbnailRenderer

logger = logging.getLogger("backfill_thumbnails")


def backfill(config_path=None, include_comics=False, dry_run=False) -> int:
    """Renders every missing thumbnail. Returns the number of failures."""
    store = ConfigStore(config_path)
    settings = store.load()
    engine = make_engine(settings.database_url)
    SessionLocal = make_session_factory(engine)
    renderer = DefaultThumbnailRenderer(timeout=settings.media_timeout)

    with SessionLocal() as db:
        pending = missing_thumbnails(db, settings, include_comics=include_comics)

    if not pending:
        print("All thumbnails are present. Nothing to do.")
        return 0

    print(f"Found {len(pending)} file(s) without a thumbnail.")
    if dry_run:
        for video in pending:
            print(f"  - {video.filename}")
        return 0

    failures = []
    for video in tqdm(pending, desc="Rendering thumbnails", unit="file"):
        try:
            renderer.render(video.path, settings.thumbnail_dir, video.filename)
        except Exception as e:
            failures.append((video.filename, e))

    print(f"\nGenerated {len(pending) - len(failures)} thumbnail(s).")
    for filename, error in failures:
        print(f"  - [ERROR] {filename}: {error}")
    return len(failures)


def main() -> None:
    parser = argparse.ArgumentParser(description="Render missing video and comic thumbnails.")
    parser.add_argument("--config", help="Path to config.json (defaults to TAGGART_CONFIG or ./config.json).")
    parser.add_argument("--comics", action="store_true", help="Also render 2x2 collages for .cbz archives.")
    parser.add_argument("--dry-run", action="store_true", help="List what would be rendered and exit.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-9s %(name)s: %(message)s")
    failures = backfill(args.config, include_comics=args.comics, dry_run=args.dry_run)
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
