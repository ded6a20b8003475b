from __future__ import annotations

from typing import Callable, Iterable, Optional

from .models import AuthorizedUser, Intent, Message

SUBJECT = "Subject"
FROM = "From"

PRINT_KEYWORD = "print"
SAVE_KEYWORD = "save"

Predicate = Callable[[Message], bool]


def header_contains(msg: Message, needle: str, header_name: str) -> bool:
    """
    True iff the first header named exactly `header_name` contains `needle`,
    compared lower-cased. False when the message has no such header.
    """
    value = msg.header(header_name)
    if value is None:
        return False
    return needle.lower() in value.lower()


def has_labels(*labels: str) -> Predicate:
    wanted = frozenset(labels)

    def _pred(msg: Message) -> bool:
        return wanted <= msg.labels

    return _pred


def is_eligible(
    msg: Message,
    unread_label: str = "UNREAD",
    personal_label: str = "CATEGORY_PERSONAL",
) -> bool:
    return has_labels(unread_label, personal_label)(msg)


def matching_user(users: Iterable[AuthorizedUser], msg: Message) -> Optional[AuthorizedUser]:
    for user in users:
        for email in user.emails:
            if header_contains(msg, email, FROM):
                return user
    return None


def is_authorized(
    users: Iterable[AuthorizedUser],
    shared_token: Optional[str],
    msg: Message,
) -> bool:
    """
    Known senders are always trusted. Anyone else needs the shared token
    somewhere in the subject. An empty token never authorizes.
    """
    if matching_user(users, msg) is not None:
        return True
    if not shared_token:
        return False
    return header_contains(msg, shared_token, SUBJECT)


def classify_intent(msg: Message) -> Intent:
    # print wins over save
    if header_contains(msg, PRINT_KEYWORD, SUBJECT):
        return Intent.PRINT
    if header_contains(msg, SAVE_KEYWORD, SUBJECT):
        return Intent.SAVE
    return Intent.NONE
