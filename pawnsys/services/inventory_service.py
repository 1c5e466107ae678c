"""Rack map: where pledged items are physically kept.

Locations have the form ``<rack>-<slot>`` (e.g. ``A-3``). A rack location
has no bearing on a pledge's financial state.
"""
import logging
import re

from pawnsys.config import DEFAULT_RACKS
from pawnsys.calculations import REDEEMED, AUCTIONED
from pawnsys.exceptions import PledgeNotFoundError, RackNotFoundError, ValidationError
from pawnsys.result import Result, ErrorType
from pawnsys.services import audit_log

logger = logging.getLogger(__name__)

LOCATION_PATTERN = re.compile(r"^([A-Z0-9]+)-(\d+)$")


def load_racks(storage):
    """Racks from settings, or the default layout when none are configured."""
    racks = storage.get_setting('racks')
    return [dict(r) for r in (racks if racks is not None else DEFAULT_RACKS)]


def parse_location(location):
    """Split 'a-3' into ('A', 3)."""
    match = LOCATION_PATTERN.match((location or "").strip().upper())
    if not match:
        raise ValidationError(f"Invalid rack location: {location!r}", field="rack_location")
    return match.group(1), int(match.group(2))


def normalize_location(location, racks):
    """Canonical form of a slot ('a-03' -> 'A-3') after checking it exists.

    Raises:
        ValidationError: Malformed location or slot outside the rack.
        RackNotFoundError: Unknown rack.
    """
    rack_id, slot = parse_location(location)
    rack = next((r for r in racks if r['id'] == rack_id), None)
    if rack is None:
        raise RackNotFoundError(rack_id)
    if slot < 1 or slot > rack['slots']:
        raise ValidationError(f"Rack {rack_id} has slots 1-{rack['slots']}", field="rack_location")
    return f"{rack_id}-{slot}"


class InventoryService:
    """Manages racks and moves pledges between slots."""

    def __init__(self, storage, pledge_service, audit_logger=None):
        self.storage = storage
        self.pledges = pledge_service
        self.audit = audit_logger

    def list_racks(self):
        return load_racks(self.storage)

    def get_rack(self, rack_id):
        for rack in self.list_racks():
            if rack['id'] == rack_id.upper():
                return rack
        raise RackNotFoundError(rack_id)

    def slot_occupancy(self):
        """Location -> IDs of pledges whose items are still held there."""
        occupancy = {}
        for pledge in self.pledges.list_pledges():
            if not pledge.rack_location or pledge.status in (REDEEMED, AUCTIONED):
                continue
            occupancy.setdefault(pledge.rack_location, []).append(pledge.id)
        return occupancy

    def add_rack(self, rack_id, name=None, slots=20, description="", user="System"):
        rack_id = (rack_id or "").strip().upper()
        if not re.match(r"^[A-Z0-9]+$", rack_id):
            return Result.fail(f"Invalid rack ID: {rack_id!r}", ErrorType.VALIDATION)
        try:
            slots = int(slots)
        except (TypeError, ValueError):
            return Result.fail("Slots must be a number", ErrorType.VALIDATION)
        if slots < 1:
            return Result.fail("A rack needs at least one slot", ErrorType.VALIDATION)

        racks = self.list_racks()
        if any(r['id'] == rack_id for r in racks):
            return Result.fail(f"Rack {rack_id} already exists", ErrorType.DUPLICATE)

        rack = {'id': rack_id, 'name': name or f"Rack {rack_id}", 'slots': slots, 'description': description}
        racks.append(rack)
        self.storage.set_setting('racks', racks)
        if self.audit:
            self.audit.log(audit_log.CREATE, "inventory", f"{rack['name']} has been created",
                           {'rack_id': rack_id, 'slots': slots}, user=user)
        return Result.ok(rack)

    def delete_rack(self, rack_id, user="System"):
        """Remove an empty rack. Refused while any held pledge sits in it."""
        rack_id = (rack_id or "").strip().upper()
        racks = self.list_racks()
        if not any(r['id'] == rack_id for r in racks):
            return Result.fail(f"Rack '{rack_id}' not found", ErrorType.NOT_FOUND)
        if any(loc.startswith(rack_id + '-') for loc in self.slot_occupancy()):
            return Result.fail("Rack has items. Move them first.", ErrorType.NOT_EMPTY)

        self.storage.set_setting('racks', [r for r in racks if r['id'] != rack_id])
        if self.audit:
            self.audit.log(audit_log.UPDATE, "inventory", f"Deleted rack {rack_id}",
                           {'rack_id': rack_id}, user=user)
        return Result.ok(rack_id)

    def move_pledge(self, pledge_id, location, user="System"):
        """Assign a pledge to ``location``. Returns Result with the new location."""
        try:
            location = normalize_location(location, self.list_racks())
        except ValidationError as e:
            return Result.fail(e.message, ErrorType.VALIDATION)
        except RackNotFoundError as e:
            return Result.fail(e.message, ErrorType.NOT_FOUND)

        try:
            pledge = self.pledges.update_rack_location(pledge_id, location, user=user)
        except PledgeNotFoundError as e:
            return Result.fail(e.message, ErrorType.NOT_FOUND)

        logger.info(f"Pledge {pledge_id} moved to {pledge.rack_location}")
        return Result.ok(pledge.rack_location)
