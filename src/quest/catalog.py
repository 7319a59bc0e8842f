"""Campaign loading and adapter wiring.

The campaign editor exports a JSON list of events, each carrying the
incentives a buyer can complete for that event's tickets::

    [
      {
        "id": "techconf-2026",
        "name": "TechConf 2026",
        "incentives": [
          {"id": "share", "type": "social_share", "discountBps": 500,
           "description": "...", "expiresAt": "2026-12-01T23:59:59Z"}
        ]
      }
    ]
"""

import json
from pathlib import Path
from typing import Iterable, Optional, Union

import httpx
from pydantic import ValidationError

from src.config import config
from src.database import Database
from src.logging_utils import get_logger
from src.models import IncentiveDefinition, IncentiveType
from src.quest.adapters.check_in import CheckInVerifier
from src.quest.adapters.feedback import FeedbackVerifier
from src.quest.adapters.manual import ManualVerifier
from src.quest.adapters.referral import ReferralVerifier
from src.quest.adapters.social_share import SocialShareVerifier
from src.quest.registry import VerifierRegistry

logger = get_logger(__name__)


def load_incentive_definitions(path: Union[str, Path]) -> list[IncentiveDefinition]:
    """Read and validate a campaign editor export.

    Raises:
        ValueError: The file is not a list of events, or any incentive is
            invalid. Every problem is listed, not just the first.
    """
    with open(path) as f:
        events = json.load(f)

    if not isinstance(events, list):
        raise ValueError(f"Campaign file {path} must contain a list of events")

    definitions: list[IncentiveDefinition] = []
    errors: list[str] = []
    seen: set[str] = set()

    for i, event in enumerate(events):
        if not isinstance(event, dict) or not event.get("id"):
            errors.append(f"event[{i}]: missing id")
            continue
        for j, raw in enumerate(event.get("incentives") or []):
            where = f"{event['id']}.incentives[{j}]"
            if not isinstance(raw, dict):
                errors.append(f"{where}: not an object")
                continue
            try:
                definition = IncentiveDefinition.model_validate({"eventId": event["id"], **raw})
            except ValidationError as e:
                for err in e.errors():
                    field = ".".join(str(part) for part in err["loc"]) or "incentive"
                    errors.append(f"{where}.{field}: {err['msg']}")
                continue
            if definition.id in seen:
                errors.append(f"{where}: duplicate incentive id {definition.id}")
                continue
            seen.add(definition.id)
            definitions.append(definition)

    if errors:
        raise ValueError("Invalid campaign data:\n" + "\n".join(f"  - {e}" for e in errors))

    logger.info(f"Loaded {len(definitions)} incentive definitions from {path}")
    return definitions


def build_registry(
    db: Database,
    definitions: Iterable[IncentiveDefinition] = (),
    http_client: Optional[httpx.AsyncClient] = None,
) -> VerifierRegistry:
    """Construct every adapter against the ledger and register it.

    Args:
        db: Ledger providing check-in codes, referral claims and the review queue.
        definitions: Loaded incentives whose verification configs are checked
            against their adapters.
        http_client: Client for the social-share probe.

    Raises:
        ValueError: A definition's verification config is rejected by its adapter.
    """
    definitions = list(definitions)

    registry = VerifierRegistry()
    registry.register(
        SocialShareVerifier(http_client=http_client, timeout=config.social_probe_timeout_seconds)
    )
    registry.register(CheckInVerifier(db.redeem_check_in_code))
    registry.register(ReferralVerifier(db.purchase_qualifies_as_referee, db))
    registry.register(FeedbackVerifier(min_length=config.feedback_min_length))
    registry.register(ManualVerifier(db.enqueue_review))
    registry.register(ManualVerifier(db.enqueue_review, IncentiveType.SPONSOR_SESSION))

    errors = []
    for definition in definitions:
        verifier = registry.get(definition.type)
        if verifier is None:
            continue
        for problem in verifier.validate_config(definition.verification_config):
            errors.append(f"{definition.id}: {problem}")
    if errors:
        raise ValueError("Invalid verification config:\n" + "\n".join(f"  - {e}" for e in errors))

    logger.info(f"Registered verifiers: {', '.join(t.value for t in registry.incentive_types())}")
    return registry

