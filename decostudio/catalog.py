from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from decostudio.errors import RoomNotFound, StyleNotFound, ValidationError


@dataclass(frozen=True)
class Style:
    slug: str
    name: str
    descriptor: str


@dataclass(frozen=True)
class RoomType:
    slug: str
    name: str
    descriptor: str


@dataclass(frozen=True)
class TransformMode:
    key: str
    instruction: str
    strength: float
    depth_scale: float
    extra: Dict[str, Any] = field(default_factory=dict)


STYLES: List[Style] = [
    Style('moderne', 'Moderne', 'sophisticated contemporary interior, clean lines, neutral palette with bold accents'),
    Style('minimaliste', 'Minimaliste', 'minimalist scandinavian interior, uncluttered, light wood, white walls'),
    Style('boheme', 'Bohème', 'bohemian interior, layered textiles, rattan, plants, warm earthy colors'),
    Style('industriel', 'Industriel', 'industrial loft interior, exposed brick, black metal, raw concrete'),
    Style('classique', 'Classique', 'classic french interior, mouldings, elegant furniture, timeless materials'),
    Style('japandi', 'Japandi', 'japandi interior, zen calm, low furniture, natural wood, linen, muted tones'),
    Style('midcentury', 'Mid-Century', 'mid-century modern interior, walnut wood, tapered legs, retro 1950s accents'),
    Style('coastal', 'Coastal', 'coastal interior, bright and airy, white and blue, natural fibers'),
    Style('farmhouse', 'Farmhouse', 'modern farmhouse interior, rustic wood beams, shiplap, cozy textures'),
    Style('artdeco', 'Art Déco', 'art deco interior, geometric patterns, velvet, brass, glamorous 1920s mood'),
]

ROOM_TYPES: List[RoomType] = [
    RoomType('salon', 'Salon', 'living room'),
    RoomType('chambre', 'Chambre', 'bedroom'),
    RoomType('chambre-enfant', "Chambre d'enfant", "child's bedroom"),
    RoomType('cuisine', 'Cuisine', 'kitchen'),
    RoomType('salle-de-bain', 'Salle de bain', 'bathroom'),
    RoomType('bureau', 'Bureau', 'home office'),
    RoomType('salle-a-manger', 'Salle à manger', 'dining room'),
    RoomType('entree', 'Entrée', 'entrance hall'),
    RoomType('terrasse', 'Terrasse', 'terrace'),
]

TRANSFORM_MODES: List[TransformMode] = [
    TransformMode(
        'full_redesign',
        'Replace the furniture and decoration, keep walls, windows, doors and ceiling exactly in place.',
        0.55,
        1.0,
    ),
    TransformMode(
        'keep_layout',
        'Restyle the existing furniture while keeping every piece at its current position.',
        0.45,
        1.2,
    ),
    TransformMode(
        'decor_only',
        'Only change decoration and accessories, keep furniture and architecture untouched.',
        0.35,
        1.3,
    ),
]

DEFAULT_TRANSFORM_MODE = 'full_redesign'

_STYLES_BY_SLUG = {style.slug: style for style in STYLES}
_ROOMS_BY_SLUG = {room.slug: room for room in ROOM_TYPES}
_MODES_BY_KEY = {mode.key: mode for mode in TRANSFORM_MODES}


def get_style(slug: str) -> Style:
    style = _STYLES_BY_SLUG.get((slug or '').strip().lower())
    if not style:
        raise StyleNotFound(slug)
    return style


def get_room(slug: str) -> RoomType:
    room = _ROOMS_BY_SLUG.get((slug or '').strip().lower())
    if not room:
        raise RoomNotFound(slug)
    return room


def get_transform_mode(key: str | None) -> TransformMode:
    value = (key or DEFAULT_TRANSFORM_MODE).strip().lower()
    mode = _MODES_BY_KEY.get(value)
    if not mode:
        raise ValidationError(
            f'Unknown transform mode: {key}',
            {'mode': key, 'allowed': sorted(_MODES_BY_KEY)},
        )
    return mode


def build_prompt(style: Style, room: RoomType, mode: TransformMode) -> str:
    return (
        f'Photorealistic redesign of this {room.descriptor} as a {style.descriptor}. '
        f'{mode.instruction} '
        'Same camera angle, same perspective, natural daylight, high detail, interior design magazine photo.'
    )


def build_params(mode: TransformMode) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        'strength': mode.strength,
        'depth_scale': mode.depth_scale,
        'output_format': 'jpeg',
    }
    params.update(mode.extra)
    return params
