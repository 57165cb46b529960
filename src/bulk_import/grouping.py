"""Review-stage grouping of converted files into editable group drafts."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from bulk_import.classifier import normalize_key
from bulk_import.schema import UNMATCHED_KEY, UNMATCHED_NAME, Classification, Subtype


@dataclass(frozen=True)
class DraftMember:
    """One converted file inside a draft."""

    index: int
    original_filename: str
    url: str
    subtype: Subtype
    descriptor: str | None = None


@dataclass
class GroupDraft:
    key: str
    name: str
    members: list[DraftMember] = field(default_factory=list)
    renamed: bool = False

    @property
    def is_unmatched(self) -> bool:
        return self.key == UNMATCHED_KEY


def group_display_name(key: str, descriptor: str | None) -> str:
    """``KEY - descriptor`` when the filename carried a product word, else the key."""
    if key == UNMATCHED_KEY:
        return UNMATCHED_NAME
    return f"{key} - {descriptor}" if descriptor else key


def default_group_name(key: str, members: list[DraftMember]) -> str:
    descriptor = members[0].descriptor if members else None
    return group_display_name(key, descriptor)


def _sort_drafts(drafts: Iterable[GroupDraft]) -> list[GroupDraft]:
    return sorted(drafts, key=lambda draft: (draft.is_unmatched, draft.key))


def build_group_drafts(
    entries: Iterable[tuple[int, str, str, Classification]],
) -> list[GroupDraft]:
    """Group ``(index, filename, url, classification)`` entries by look key.

    Members are sorted by filename and the UNMATCHED bucket always comes last.
    """
    buckets: dict[str, list[DraftMember]] = {}
    for index, filename, url, classification in entries:
        buckets.setdefault(classification.bucket_key, []).append(
            DraftMember(
                index=index,
                original_filename=filename,
                url=url,
                subtype=classification.subtype,
                descriptor=classification.descriptor,
            )
        )

    drafts = []
    for key, members in buckets.items():
        members.sort(key=lambda member: member.original_filename)
        drafts.append(
            GroupDraft(key=key, name=default_group_name(key, members), members=members)
        )
    return _sort_drafts(drafts)


def _find(drafts: list[GroupDraft], key: str) -> GroupDraft | None:
    return next((draft for draft in drafts if draft.key == key), None)


def rename_draft(drafts: list[GroupDraft], key: str, name: str) -> list[GroupDraft]:
    cleaned = name.strip()
    if not cleaned:
        raise ValueError("Group name must not be empty")
    draft = _find(drafts, key)
    if draft is None:
        raise KeyError(f"No group draft with key {key!r}")
    draft.name = cleaned
    draft.renamed = True
    return drafts


def move_member(
    drafts: list[GroupDraft], from_key: str, position: int, to_key: str
) -> list[GroupDraft]:
    """Move the member at ``position`` of one draft into another draft.

    Moving into an unknown key starts a new draft for it. Drafts left empty are
    dropped, except the UNMATCHED bucket.
    """
    source = _find(drafts, from_key)
    if source is None:
        raise KeyError(f"No group draft with key {from_key!r}")
    if not 0 <= position < len(source.members):
        raise IndexError(f"No member {position} in group {from_key!r}")

    target_key = normalize_key(to_key)
    if not target_key:
        raise ValueError("Target group key must not be empty")
    target = _find(drafts, target_key)
    if target is None:
        target = GroupDraft(key=target_key, name=target_key)
        drafts.append(target)

    member = source.members.pop(position)
    target.members.append(member)
    target.members.sort(key=lambda m: m.original_filename)

    kept = [d for d in drafts if d.members or d.is_unmatched]
    return _sort_drafts(kept)


def set_member_subtype(
    drafts: list[GroupDraft], key: str, position: int, subtype: Subtype
) -> list[GroupDraft]:
    draft = _find(drafts, key)
    if draft is None:
        raise KeyError(f"No group draft with key {key!r}")
    if not 0 <= position < len(draft.members):
        raise IndexError(f"No member {position} in group {key!r}")
    draft.members[position] = replace(draft.members[position], subtype=Subtype(subtype))
    return drafts
