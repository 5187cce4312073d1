"""
Identity Assignment

Design Decision: Display Names
==============================

Options Considered:
1. Let users pick a name - needs persistence, which we don't have
2. Random name stored with the connection - differs between renders
3. Name derived from the connection id - deterministic, nothing to store

Decision: Derive from the id
- A 32-bit string hash of the id seeds a PRNG
- The PRNG picks one color and one animal -> "Teal Otter"
- Same id always renders the same name, on any process

Device names come from the User-Agent header (parsed with `user-agents`):
"<os family> <device model or browser family>", "Mac OS" shortened to "Mac",
and "Unknown Device" when nothing can be resolved.
"""

import random
import uuid
from dataclasses import dataclass, asdict
from typing import Dict, Optional, Tuple

from user_agents import parse as parse_user_agent


UNKNOWN_DEVICE = 'Unknown Device'

# ua-parser reports unresolved fields as "Other"
_UNRESOLVED = {None, '', 'Other'}

_OS_ALIASES = {
    'Mac OS X': 'Mac',
    'Mac OS': 'Mac',
}

COLORS = [
    'Amaranth', 'Amber', 'Amethyst', 'Apricot', 'Aqua', 'Aquamarine', 'Azure',
    'Beige', 'Black', 'Blue', 'Blush', 'Bronze', 'Brown', 'Chocolate',
    'Coffee', 'Copper', 'Coral', 'Crimson', 'Cyan', 'Emerald', 'Fuchsia',
    'Gold', 'Gray', 'Green', 'Harlequin', 'Indigo', 'Ivory', 'Jade',
    'Lavender', 'Lime', 'Magenta', 'Maroon', 'Moccasin', 'Olive', 'Orange',
    'Peach', 'Pink', 'Plum', 'Purple', 'Red', 'Rose', 'Salmon', 'Sapphire',
    'Scarlet', 'Silver', 'Tan', 'Teal', 'Tomato', 'Turquoise', 'Violet',
    'White', 'Yellow',
]

ANIMALS = [
    'Albatross', 'Alligator', 'Alpaca', 'Antelope', 'Badger', 'Barracuda',
    'Beaver', 'Bison', 'Buffalo', 'Camel', 'Capybara', 'Caribou', 'Cheetah',
    'Chinchilla', 'Cobra', 'Cougar', 'Coyote', 'Crane', 'Dolphin', 'Eagle',
    'Falcon', 'Ferret', 'Flamingo', 'Fox', 'Gazelle', 'Gecko', 'Giraffe',
    'Gorilla', 'Hedgehog', 'Heron', 'Ibex', 'Jaguar', 'Kangaroo', 'Koala',
    'Lemur', 'Leopard', 'Llama', 'Lynx', 'Manatee', 'Meerkat', 'Mongoose',
    'Moose', 'Narwhal', 'Ocelot', 'Octopus', 'Otter', 'Owl', 'Panda',
    'Panther', 'Pelican', 'Penguin', 'Puffin', 'Raccoon', 'Raven',
    'Salamander', 'Seal', 'Sparrow', 'Swan', 'Tiger', 'Toucan', 'Walrus',
    'Wolf', 'Wombat', 'Zebra',
]


def generate_peer_id() -> str:
    """Generate a random (version 4) connection id."""
    return str(uuid.uuid4())


def hash_code(text: str) -> int:
    """
    32-bit signed string hash (h = 31*h + c over UTF-16 code units).

    Stable across processes, unlike the builtin hash().
    """
    encoded = text.encode('utf-16-le')
    h = 0
    for i in range(0, len(encoded), 2):
        code_unit = encoded[i] | (encoded[i + 1] << 8)
        h = (h * 31 + code_unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def display_name(peer_id: str) -> str:
    """Deterministic two-word display name for a connection id."""
    rng = random.Random(hash_code(peer_id))
    color = rng.choice(COLORS)
    animal = rng.choice(ANIMALS)
    return f"{color.capitalize()} {animal.capitalize()}"


@dataclass
class PeerName:
    """Human-facing description of a connection."""
    display_name: str
    device_name: str
    model: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    type: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'model': self.model,
            'os': self.os,
            'browser': self.browser,
            'type': self.type,
            'deviceName': self.device_name,
            'displayName': self.display_name,
        }


def _resolved(value: Optional[str]) -> Optional[str]:
    return None if value in _UNRESOLVED else value


def _device_type(ua) -> Optional[str]:
    if ua.is_mobile:
        return 'mobile'
    if ua.is_tablet:
        return 'tablet'
    if ua.is_bot:
        return 'bot'
    return None


def describe_device(user_agent: Optional[str]) -> Dict[str, Optional[str]]:
    """Resolve os, model, browser and device type from a User-Agent string."""
    if not user_agent:
        return {'os': None, 'model': None, 'browser': None, 'type': None}

    ua = parse_user_agent(user_agent)
    return {
        'os': _resolved(ua.os.family),
        'model': _resolved(ua.device.model),
        'browser': _resolved(ua.browser.family),
        'type': _device_type(ua),
    }


def device_name(user_agent: Optional[str]) -> str:
    """
    Short device label, e.g. "Mac Chrome" or "Android Pixel 7".

    Returns "Unknown Device" when the User-Agent resolves to nothing.
    """
    info = describe_device(user_agent)
    parts = []

    if info['os']:
        parts.append(_OS_ALIASES.get(info['os'], info['os']))

    # Macs report the model "Mac", which would just repeat the OS
    if info['model'] and info['model'] not in parts:
        parts.append(info['model'])
    elif info['browser']:
        parts.append(info['browser'])

    return ' '.join(parts) or UNKNOWN_DEVICE


class IdentityAssigner:
    """Creates the id and name for every new connection."""

    def assign(self, user_agent: Optional[str] = None) -> Tuple[str, PeerName]:
        peer_id = generate_peer_id()
        return peer_id, self.name_for(peer_id, user_agent)

    def name_for(self, peer_id: str, user_agent: Optional[str] = None) -> PeerName:
        info = describe_device(user_agent)
        return PeerName(
            display_name=display_name(peer_id),
            device_name=device_name(user_agent),
            model=info['model'],
            os=info['os'],
            browser=info['browser'],
            type=info['type'],
        )
