"""Preset transformations offered in the /boo preset picker.

WHY: Many users open the bot without a prompt in mind. A short list of
named presets gives them a one-click starting point; each preset is
just a canned prompt fed into the same edit pipeline.

HOW: PRESETS maps a stable id (the radio button value) to a Preset.
get_preset() returns None for unknown ids so modal submissions with a
tampered value are ignored instead of raising.

RULES:
- Preset ids are stable; they round-trip through Slack option values
- Presets are frozen constants, never mutated at runtime
"""

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Preset:
    id: str
    name: str
    description: str
    prompt: str


PRESETS: Dict[str, Preset] = {
    "new_do": Preset(
        id="new_do",
        name="New 'Do",
        description="Upgraded hairstyle",
        prompt=(
            "Give this person a stylish new hairstyle, keeping their face and "
            "features identical but updating their hair to look modern and trendy"
        ),
    ),
    "cheese_please": Preset(
        id="cheese_please",
        name="Cheese Please",
        description="Friendlier, smiling expression",
        prompt=(
            "Make this person smile naturally and warmly, adjusting their facial "
            "expression to look friendlier and more approachable"
        ),
    ),
    "cartoon_me": Preset(
        id="cartoon_me",
        name="Cartoon Me",
        description="Toon/comic transformation",
        prompt=(
            "Transform this photo into a cartoon or comic book style while "
            "maintaining the person's recognizable features"
        ),
    ),
    "teleport_me": Preset(
        id="teleport_me",
        name="Teleport Me",
        description="Background swap (fun location)",
        prompt=(
            "Replace the background with an interesting location like a tropical "
            "beach, mountain vista, or futuristic cityscape while keeping the "
            "person unchanged"
        ),
    ),
    "specs_appeal": Preset(
        id="specs_appeal",
        name="Specs Appeal",
        description="Add funny glasses",
        prompt=(
            "Add stylish or funny glasses to this person's face, choosing frames "
            "that complement their features"
        ),
    ),
    "spirit_animal": Preset(
        id="spirit_animal",
        name="Spirit Animal",
        description="Subtle animal companion overlay",
        prompt=(
            "Add a small, cute animal companion (like a cat, bird, or dog) "
            "somewhere in the image in a natural way"
        ),
    ),
}


def get_preset(preset_id: Optional[str]) -> Optional[Preset]:
    if not preset_id:
        return None
    return PRESETS.get(preset_id)


def all_presets() -> List[Preset]:
    return list(PRESETS.values())
