"""
Crawler classification by User-Agent.

The table below is ordered: the first token found (case-insensitive,
substring) decides the class. Anything that matches nothing is a human.
"""

from enum import Enum


class CrawlerClass(str, Enum):
    HUMAN = "Human"
    SEARCH_ENGINE = "SearchEngine"
    SOCIAL_MEDIA = "SocialMedia"
    OTHER_BOT = "OtherBot"

    @property
    def tag(self) -> str:
        """Short tag used in cache keys ("se", "sm", "bot")."""
        return CLASS_TAGS[self]


CLASS_TAGS = {
    CrawlerClass.HUMAN: "human",
    CrawlerClass.SEARCH_ENGINE: "se",
    CrawlerClass.SOCIAL_MEDIA: "sm",
    CrawlerClass.OTHER_BOT: "bot",
}

# (lowercase token, class) - order matters
CRAWLER_TABLE: tuple[tuple[str, CrawlerClass], ...] = (
    ("googlebot", CrawlerClass.SEARCH_ENGINE),
    ("bingbot", CrawlerClass.SEARCH_ENGINE),
    ("baiduspider", CrawlerClass.SEARCH_ENGINE),
    ("360spider", CrawlerClass.SEARCH_ENGINE),
    ("sogou", CrawlerClass.SEARCH_ENGINE),
    ("yandexbot", CrawlerClass.SEARCH_ENGINE),
    ("duckduckbot", CrawlerClass.SEARCH_ENGINE),
    ("facebookexternalhit", CrawlerClass.SOCIAL_MEDIA),
    ("twitterbot", CrawlerClass.SOCIAL_MEDIA),
    ("linkedinbot", CrawlerClass.SOCIAL_MEDIA),
    ("slackbot", CrawlerClass.SOCIAL_MEDIA),
    ("discordbot", CrawlerClass.SOCIAL_MEDIA),
    ("telegrambot", CrawlerClass.SOCIAL_MEDIA),
    ("whatsapp", CrawlerClass.SOCIAL_MEDIA),
    ("applebot", CrawlerClass.OTHER_BOT),
    ("ahrefsbot", CrawlerClass.OTHER_BOT),
    ("semrushbot", CrawlerClass.OTHER_BOT),
)


def classify(user_agent: str | None, table=CRAWLER_TABLE) -> CrawlerClass:
    if not user_agent:
        return CrawlerClass.HUMAN

    lower = user_agent.lower()
    for token, crawler_class in table:
        if token in lower:
            return crawler_class
    return CrawlerClass.HUMAN


def is_bot(crawler_class: CrawlerClass) -> bool:
    return crawler_class is not CrawlerClass.HUMAN
