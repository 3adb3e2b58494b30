"""Seed the sample posts into the configured database.

Usage:
    python -m scripts.seed_posts

Reads STORAGE_URL like the API does. Posts whose slug already exists are
skipped, so running it twice is harmless.
"""

import asyncio
import logging
import sys

from blogapi.config import get_settings
from blogapi.services.storage import seed
from blogapi.services.storage.errors import StorageError
from blogapi.services.storage.posts import slugify
from blogapi.services.storage.supervisor import create_primary_backend

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


async def main() -> int:
    settings = get_settings()
    kind = settings.storage_kind
    if kind is None:
        print("STORAGE_URL is missing or unrecognised; nothing to seed.")
        return 1

    storage = create_primary_backend(kind, settings)
    try:
        await storage.connect()
    except StorageError as e:
        print(f"Could not connect to {kind} storage: {e}")
        return 1

    try:
        admin = await storage.get_user_by_username(settings.admin_username)
        author_id = admin.id if admin else None
        posts = seed.sample_posts(author_id)
        print(f"Seeding {len(posts)} posts into {kind} storage...")

        created = 0
        # Oldest first, so the first sample ends up with the newest publishedAt
        for post in reversed(posts):
            if await storage.get_post_by_slug(slugify(post.title)):
                print(f"  Skipped (exists): {post.title[:60]}")
                continue
            stored = await storage.create_post(post)
            created += 1
            print(f"  Created: {stored.slug}")
    finally:
        await storage.close()

    print(f"Done! {created} created, {len(posts) - created} skipped.")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
