"""Class progression rules and graduate account-number markers."""
import re

from django.conf import settings


ALL_CLASSES = (
    'NC', 'LKG', 'UKG',
    '1st', '2nd', '3rd', '4th', '5th',
    '6th', '7th', '8th',
    '9th', '10th', '11th', '12th',
)
CLASS_CHOICES = tuple((name, name) for name in ALL_CLASSES)

TERMINAL_CLASS = ALL_CLASSES[-1]

# Tuition is charged monthly up to 8th, annually (plus registration) from 9th.
MONTHLY_FEE_CLASSES = ALL_CLASSES[:ALL_CLASSES.index('9th')]
REGISTRATION_FEE_CLASSES = ALL_CLASSES[ALL_CLASSES.index('9th'):]

TRANSPORT_TIER_NC_TO_5 = 'nc_to_5'
TRANSPORT_TIER_6_TO_8 = '6_to_8'
TRANSPORT_TIER_9_TO_12 = '9_to_12'


def class_index(class_name: str) -> int:
    try:
        return ALL_CLASSES.index(class_name)
    except ValueError:
        return -1


def is_valid_class(class_name: str) -> bool:
    return class_name in ALL_CLASSES


def next_class(class_name: str):
    """Class a student moves to on promotion; None for the terminal class."""
    index = class_index(class_name)
    if index < 0 or class_name == TERMINAL_CLASS:
        return None
    return ALL_CLASSES[index + 1]


def promotable_classes_descending():
    return [name for name in reversed(ALL_CLASSES) if name != TERMINAL_CLASS]


def transport_tier(class_name: str) -> str:
    index = class_index(class_name)
    if index >= class_index('9th'):
        return TRANSPORT_TIER_9_TO_12
    if index >= class_index('6th'):
        return TRANSPORT_TIER_6_TO_8
    return TRANSPORT_TIER_NC_TO_5


def session_code(session_name: str) -> str:
    parts = session_name.split('-')
    if len(parts) == 2:
        return f"{parts[0].strip()[-2:]}{parts[1].strip()[-2:]}"
    return ''.join(char for char in session_name if char.isdigit())[:4]


def graduate_prefix(session_name: str) -> str:
    return f"{settings.FEES_GRADUATE_PREFIX}{session_code(session_name)}-"


def _prefix_pattern():
    return re.compile(rf"^{re.escape(settings.FEES_GRADUATE_PREFIX)}\d{{4}}-")


def has_graduate_prefix(account_number: str) -> bool:
    return bool(_prefix_pattern().match(account_number or ''))


def add_graduate_prefix(account_number: str, session_name: str) -> str:
    if has_graduate_prefix(account_number):
        return account_number
    return f"{graduate_prefix(session_name)}{account_number}"
