# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional


class TemplateId:
    template_id: str
    package_id: str
    qualified_name: str

    def __init__(self, template_id):
        self.template_id = template_id
        if ":" in template_id:
            (package_id, qualified_name) = template_id.split(":", 1)
        else:
            (package_id, qualified_name) = ("", template_id)
        self.package_id = package_id
        self.qualified_name = qualified_name

    def __str__(self):
        return self.template_id

    def __eq__(self, other):
        return isinstance(other, TemplateId) and other.template_id == self.template_id

    def __hash__(self):
        return hash(self.template_id)


class TemplateQualifiedNames:
    amulet = "Splice.Amulet:Amulet"
    locked_amulet = "Splice.Amulet:LockedAmulet"


_UNSAFE_PATH_CHARS = re.compile(r"[:.]")


def sanitize_template_id(template_id: str) -> str:
    """File-name form of a template id (':' and '.' become '_')."""
    return _UNSAFE_PATH_CHARS.sub("_", template_id)


def suffix_variants(template_suffix: str) -> List[str]:
    # "Splice.Amulet:Amulet" and "Splice:Amulet:Amulet" name the same template
    variants = [template_suffix]
    if ":" in template_suffix:
        variants.append(template_suffix.replace(":", ".", 1))
    if "." in template_suffix:
        variants.append(template_suffix.replace(".", ":", 1))
    return list(dict.fromkeys(variants))


def template_matches_suffix(template_id: str, template_suffix: str) -> bool:
    for variant in suffix_variants(template_suffix):
        if template_id == variant or template_id.endswith(":" + variant):
            return True
    return False


def normalize_contract_id(contract_id) -> str:
    return str(contract_id).strip().lstrip("#")


def parse_record_time(record_time: str) -> datetime:
    return datetime.fromisoformat(record_time.replace("Z", "+00:00"))


@dataclass
class PaginationKey:
    last_migration_id: int
    last_record_time: str

    def __str__(self):
        return str((self.last_migration_id, self.last_record_time))

    def to_json(self):
        return {
            "after_record_time": self.last_record_time,
            "after_migration_id": self.last_migration_id,
        }

    @classmethod
    def from_json(cls, json):
        return cls(json["after_migration_id"], json["after_record_time"])


@dataclass
class CreatedEvent:
    event_id: str
    template_id: TemplateId
    contract_id: str
    package_name: Optional[str]
    create_arguments: Any
    created_at: Optional[str]

    @classmethod
    def from_json(cls, json, event_id=None):
        return cls(
            event_id or json.get("event_id"),
            TemplateId(json["template_id"]),
            json["contract_id"],
            json.get("package_name"),
            json.get("create_arguments"),
            json.get("created_at"),
        )

    def to_contract_json(self):
        return {
            "contract_id": self.contract_id,
            "template_id": self.template_id.template_id,
            "package_name": self.package_name,
            "create_arguments": self.create_arguments,
            "created_at": self.created_at,
        }


@dataclass
class ExercisedEvent:
    event_id: str
    template_id: TemplateId
    choice_name: str
    contract_id: str
    child_event_ids: list
    is_consuming: bool


class Event:
    @staticmethod
    def parse(json, event_id):
        if "create_arguments" in json:
            return CreatedEvent.from_json(json, event_id)
        return ExercisedEvent(
            event_id,
            TemplateId(json["template_id"]),
            json.get("choice", ""),
            json["contract_id"],
            json.get("child_event_ids", []),
            bool(json.get("consuming", False)),
        )


@dataclass
class AcsDiff:
    created_events: Dict[str, CreatedEvent]
    archived_events: Dict[str, ExercisedEvent]


class LedgerParseError(Exception):
    pass


@dataclass
class TransactionTree:
    events_by_id: dict
    migration_id: int
    record_time: str
    update_id: str
    synchronizer_id: Optional[str]

    @staticmethod
    def parse(json):
        try:
            return TransactionTree(
                {
                    event_id: Event.parse(event, event_id)
                    for event_id, event in json.get("events_by_id", {}).items()
                },
                # reassignments carry the migration id on their single event
                json["migration_id"]
                if "migration_id" in json
                else json["event"]["migration_id"],
                json["record_time"],
                json["update_id"],
                json.get("synchronizer_id"),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise LedgerParseError(
                f"Failed to parse transaction tree {json.get('update_id')}"
            ) from e

    def pagination_key(self):
        return PaginationKey(self.migration_id, self.record_time)

    def acs_diff(self):
        created_events = {}
        archived_events = {}
        for event in self.events_by_id.values():
            if isinstance(event, CreatedEvent):
                created_events[event.contract_id] = event
            elif event.is_consuming:
                archived_events[event.contract_id] = event
        # A contract created and archived within the same update never shows up in the ACS
        non_transient_created_events = {
            cid: ev
            for cid, ev in created_events.items()
            if cid not in archived_events.keys()
        }
        non_transient_archived_events = {
            cid: ev
            for cid, ev in archived_events.items()
            if cid not in created_events.keys()
        }
        return AcsDiff(non_transient_created_events, non_transient_archived_events)
