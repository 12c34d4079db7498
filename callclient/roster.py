from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Participant:
    id: str
    display_name: str
    has_video: bool = False
    has_audio: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "has_video": self.has_video,
            "has_audio": self.has_audio,
        }


def fallback_name(participant_id: str) -> str:
    return f"User {participant_id}"


class RosterRegistry:
    """Remote participants and their display names, driven by transport events.

    An entry is created on the first video publish from a participant and
    removed only when that participant leaves the room. Unpublishing video
    clears ``has_video`` but keeps the participant listed, since an
    audio-only participant is still present. Entries keep insertion order so
    the rendered list stays stable across updates.
    """

    def __init__(self) -> None:
        self._participants: Dict[str, Participant] = {}
        self._names: Dict[str, str] = {}
        self._announced: Dict[str, str] = {}
        self._audio_published: Set[str] = set()

    def on_participant_video_published(self, participant_id: str, suggested_name: Optional[str] = None) -> Participant:
        participant = self._participants.get(participant_id)
        if participant is not None:
            participant.has_video = True
            return participant
        if suggested_name is not None:
            name = suggested_name
        else:
            name = self._announced.get(participant_id) or fallback_name(participant_id)
        participant = Participant(
            id=participant_id,
            display_name=name,
            has_video=True,
            has_audio=participant_id in self._audio_published,
        )
        self._participants[participant_id] = participant
        self._names[participant_id] = name
        logger.info("Participant %s (%s) added to roster", participant_id, name)
        return participant

    def on_participant_video_unpublished(self, participant_id: str) -> None:
        participant = self._participants.get(participant_id)
        if participant is None:
            return
        participant.has_video = False

    def on_participant_audio_changed(self, participant_id: str, published: bool) -> None:
        if published:
            self._audio_published.add(participant_id)
        else:
            self._audio_published.discard(participant_id)
        participant = self._participants.get(participant_id)
        if participant is not None:
            participant.has_audio = published

    def on_participant_metadata(self, participant_id: str, display_name: str) -> None:
        display_name = display_name.strip()
        if not display_name:
            return
        self._announced[participant_id] = display_name
        participant = self._participants.get(participant_id)
        if participant is not None:
            participant.display_name = display_name
            self._names[participant_id] = display_name

    def on_participant_left(self, participant_id: str) -> None:
        self._participants.pop(participant_id, None)
        self._names.pop(participant_id, None)
        self._announced.pop(participant_id, None)
        self._audio_published.discard(participant_id)
        logger.info("Participant %s removed from roster", participant_id)

    def list(self) -> List[Participant]:
        return list(self._participants.values())

    def names(self) -> Dict[str, str]:
        return dict(self._names)

    def display_name_for(self, participant_id: str) -> str:
        if participant_id in self._names:
            return self._names[participant_id]
        return self._announced.get(participant_id) or fallback_name(participant_id)

    def get(self, participant_id: str) -> Optional[Participant]:
        return self._participants.get(participant_id)

    def clear(self) -> None:
        self._participants.clear()
        self._names.clear()
        self._announced.clear()
        self._audio_published.clear()

    def snapshot(self) -> List[Dict[str, object]]:
        return [participant.to_dict() for participant in self._participants.values()]

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._participants

    def __len__(self) -> int:
        return len(self._participants)
