"""
Shortly Topic Taxonomy

Transport topics the services produce to and consume from.

Naming convention: shortly-{producer}-{consumer}
- producer: the service that owns the entity (users, links, lookups)
- consumer: the service keeping a replica (auth, links, users, analytics)
"""

from enum import Enum
from typing import Dict, List


class Topic(str, Enum):
    """Replication and fact topics."""
    USERS_AUTH = "shortly-users-auth"
    USERS_LINKS = "shortly-users-links"
    USERS_ANALYTICS = "shortly-users-analytics"
    LINKS_ANALYTICS = "shortly-links-analytics"
    LINKS_LOOKUPS = "shortly-links-lookups"
    LINKS_USERS = "shortly-links-users"
    LOOKUPS_ANALYTICS = "shortly-lookups-analytics"
    ANALYTICS_LIVE = "shortly-analytics-live"
    USERS_DLQ = "shortly-users-dlq"
    LINKS_DLQ = "shortly-links-dlq"


# Every user mutation fans out to these topics
USER_UPDATE_TOPICS: List[str] = [
    Topic.USERS_AUTH.value,
    Topic.USERS_LINKS.value,
    Topic.USERS_ANALYTICS.value,
]

# Every link mutation fans out to these topics
LINK_UPDATE_TOPICS: List[str] = [
    Topic.LINKS_ANALYTICS.value,
    Topic.LINKS_LOOKUPS.value,
    Topic.LINKS_USERS.value,
]

# Exhausted messages go back to the service owning the outbox row
DEAD_LETTER_TOPICS: Dict[str, str] = {
    **{topic: Topic.USERS_DLQ.value for topic in USER_UPDATE_TOPICS},
    **{topic: Topic.LINKS_DLQ.value for topic in LINK_UPDATE_TOPICS},
}


def dead_letter_topic(topic: str) -> str:
    """Topic that receives messages of `topic` once retries are exhausted."""
    return DEAD_LETTER_TOPICS.get(topic, f"{topic}-dlq")
