# instagram_fetcher.py
#
# Description:
# This module uses the instaloader library to fetch the caption, hashtags,
# owner and media URLs of a single Instagram post in one operation.

import logging
import os
import re
from typing import List, Optional

import instaloader

from . import config
from .errors import InstagramScrapeError
from .models import MediaAsset, ScrapedPost

logger = logging.getLogger(__name__)

SHORTCODE_REGEX = re.compile(r'/(?:p|reel|reels|tv)/([A-Za-z0-9_-]+)')


def extract_shortcode(url: str) -> Optional[str]:
    """Returns the post shortcode of an Instagram URL, or None."""
    if not url:
        return None
    if "instagram." not in url.lower() and "instagr.am" not in url.lower():
        return None
    match = SHORTCODE_REGEX.search(url)
    return match.group(1) if match else None


def select_media_assets(post, limit: Optional[int] = None) -> List[MediaAsset]:
    """
    Collects the downloadable media of a post: the video for reels, the display
    image for photos and one entry per node for carousels.
    """
    assets: List[MediaAsset] = []

    if post.typename == "GraphSidecar":
        for node in post.get_sidecar_nodes():
            if node.is_video and node.video_url:
                assets.append(MediaAsset(url=node.video_url, media_type="video"))
            elif node.display_url:
                assets.append(MediaAsset(url=node.display_url, media_type="image"))
    elif post.is_video and post.video_url:
        assets.append(MediaAsset(url=post.video_url, media_type="video"))
    elif post.url:
        # The 'url' attribute provides the display image for photo posts.
        assets.append(MediaAsset(url=post.url, media_type="image"))

    if limit is not None:
        assets = assets[:limit]
    return assets


class InstagramScraper:
    """
    Fetches post details with a shared Instaloader instance.

    The instance is created on first use, handling login and session persistence;
    `reset()` drops it.
    """

    def __init__(self, username: Optional[str] = None, password: Optional[str] = None,
                 session_dir: Optional[str] = None, max_media_assets: Optional[int] = None,
                 loader: Optional[instaloader.Instaloader] = None):
        self.username = config.INSTAGRAM_USERNAME if username is None else username
        self.password = config.INSTAGRAM_PASSWORD if password is None else password
        self.session_dir = session_dir or config.INSTAGRAM_SESSION_DIR
        self.max_media_assets = max_media_assets or config.MAX_MEDIA_ASSETS
        self._loader = loader

    def reset(self):
        self._loader = None

    def _session_file(self) -> str:
        name = re.sub(r'[^a-zA-Z0-9]', '_', self.username) if self.username else "instagram_session"
        return os.path.join(self.session_dir, name)

    def get_loader(self) -> instaloader.Instaloader:
        if self._loader is not None:
            logger.debug("Reusing existing Instaloader instance")
            return self._loader

        logger.debug("Creating new Instaloader instance...")
        loader = instaloader.Instaloader(
            sleep=True,
            quiet=True,
            download_pictures=False,
            download_videos=False,
            download_video_thumbnails=False,
            download_geotags=False,
            download_comments=False,
            save_metadata=False
        )

        if not self.username:
            logger.warning("No Instagram username provided; continuing without authentication.")
            self._loader = loader
            return loader

        session_file = self._session_file()
        try:
            loader.load_session_from_file(self.username, session_file)
            if loader.test_login():
                logger.info(f"✅ Valid session found for @{self.username}")
                self._loader = loader
                return loader
            logger.warning("Session file is invalid; attempting a fresh login.")
        except FileNotFoundError:
            logger.debug(f"No existing session file found at {session_file}")
        except instaloader.TooManyRequestsException as e:
            raise InstagramScrapeError("RATE_LIMITED", "Instagram rate limit exceeded while checking the session") from e
        except instaloader.ConnectionException as e:
            raise InstagramScrapeError(
                "TRANSIENT_ERROR", f"Connection error while checking the Instagram session: {e}") from e
        except Exception as e:
            logger.warning(f"Could not load session: {e}")

        if not self.password:
            logger.error("No password provided; continuing without authentication.")
            self._loader = loader
            return loader

        logger.info(f"🔐 Attempting login for username: {self.username}")
        try:
            loader.login(self.username, self.password)
        except instaloader.TwoFactorAuthRequiredException as e:
            raise InstagramScrapeError(
                "LOGIN_REQUIRED",
                "Two-factor authentication is required; create a session file interactively first",
            ) from e
        except instaloader.BadCredentialsException as e:
            raise InstagramScrapeError("LOGIN_REQUIRED", "Instagram login failed: invalid username or password") from e
        except instaloader.ConnectionException as e:
            raise InstagramScrapeError("TRANSIENT_ERROR", f"Connection error during Instagram login: {e}") from e

        logger.info(f"✅ Login successful as @{self.username}")
        try:
            loader.save_session_to_file(session_file)
        except OSError as e:
            logger.error(f"Failed to save session: {e}")

        self._loader = loader
        return loader

    def fetch(self, url: str) -> ScrapedPost:
        """
        Fetches caption, hashtags, owner and media URLs of a post.

        Raises:
            InstagramScrapeError: with a code describing why the post is unavailable.
        """
        shortcode = extract_shortcode(url)
        if not shortcode:
            raise InstagramScrapeError("INVALID_URL", f"Could not extract shortcode from URL: {url}")

        logger.debug(f"Fetching post with shortcode: {shortcode}")

        try:
            loader = self.get_loader()
            post = instaloader.Post.from_shortcode(loader.context, shortcode)
            media = select_media_assets(post, limit=self.max_media_assets)
            scraped = ScrapedPost(
                id=str(post.mediaid),
                short_code=post.shortcode or shortcode,
                url=url,
                caption=post.caption or None,
                hashtags=list(post.caption_hashtags or []),
                owner_username=post.owner_username,
                media=media,
                timestamp=post.date_utc,
            )
        except instaloader.LoginRequiredException as e:
            raise InstagramScrapeError("LOGIN_REQUIRED", f"Instagram requires login to view {url}") from e
        except instaloader.PrivateProfileNotFollowedException as e:
            raise InstagramScrapeError("PRIVATE_POST", "Instagram post is private or inaccessible") from e
        except instaloader.QueryReturnedNotFoundException as e:
            raise InstagramScrapeError("NOT_FOUND", f"Instagram post {shortcode} was not found") from e
        except instaloader.TooManyRequestsException as e:
            raise InstagramScrapeError("RATE_LIMITED", "Instagram rate limit exceeded") from e
        except instaloader.InstaloaderException as e:
            if "401" in str(e) or "login" in str(e).lower():
                raise InstagramScrapeError("LOGIN_REQUIRED", f"Authentication error fetching {url}: {e}") from e
            if "429" in str(e) or "rate" in str(e).lower():
                raise InstagramScrapeError("RATE_LIMITED", f"Rate limit exceeded fetching {url}") from e
            raise InstagramScrapeError("TRANSIENT_ERROR", f"Instagram API error for {url}: {e}") from e

        if not scraped.media:
            raise InstagramScrapeError("NO_MEDIA", f"No suitable media asset found on Instagram post {url}")

        if scraped.caption:
            caption_preview = (scraped.caption[:70] + '...').replace('\n', ' ')
            logger.debug(f"Caption preview: {caption_preview}")
        else:
            logger.warning(f"⚠️ No caption found for {url}")

        return scraped
