"""
Administrative authoring of awards events.

Events are small documents edited by a single admin role, so every
mutation here loads the event, edits the model and writes the full
category list back. The model validators (unique category ids, unique
nominees, winner must be a nominee) run on every write.
"""

import datetime as dt
import logging
from typing import Any, Iterable, Mapping, Optional

from pydantic import ValidationError

from db.document_store import DocumentStore
from engine.ballots import EVENTS_COLLECTION, fetch_event
from engine.classes.enums import LockOverride
from engine.classes.errors import InvalidInputError, NotFoundError
from engine.classes.schemas import AwardsEvent, Category, Nominee

logger = logging.getLogger(__name__)

# Nominee fields an admin may edit in place; the tmdb id is its identity.
_EDITABLE_NOMINEE_FIELDS = {"title", "name", "poster_path"}

DEFAULT_SEASON_SCHEDULE: tuple[tuple[str, str, str], ...] = (
    ("2026_critics_choice", "Critics' Choice Awards", "2026-01-04"),
    ("2026_golden_globes", "Golden Globe Awards", "2026-01-11"),
    ("2026_european", "European Film Awards", "2026-01-17"),
    ("2026_dga", "Directors Guild of America Awards (DGA)", "2026-02-07"),
    ("2026_ifta", "IFTA Awards Ceremony", "2026-02-20"),
    ("2026_bafta", "British Academy Film Awards (BAFTA)", "2026-02-22"),
    ("2026_pga", "Producers Guild of America Awards (PGA)", "2026-02-28"),
    ("2026_sag", "The Actor Awards", "2026-03-01"),
    ("2026_wga", "Writers Guild of America Awards (WGA)", "2026-03-08"),
    ("2026_oscars", "Academy Awards (Oscars)", "2026-03-15"),
)

# (category id, display name, Awards rating breakdown key)
DEFAULT_CATEGORIES: tuple[tuple[str, str, str], ...] = (
    ("leading_actor", "Best Leading Actor", "Leading Actor"),
    ("leading_actress", "Best Leading Actress", "Leading Actress"),
    ("directing", "Best Director", "Directing"),
    ("cinematography", "Best Cinematography", "Cinematography"),
    ("visual_effects", "Best Visual Effects", "Visual Effects"),
)


def _validate_event(document: Mapping[str, Any]) -> AwardsEvent:
    try:
        return AwardsEvent.model_validate(document)
    except ValidationError as exc:
        raise InvalidInputError("Invalid awards event.", details={"errors": exc.errors(include_url=False)}) from exc


async def _save_categories(store: DocumentStore, event: AwardsEvent, categories: list[Category]) -> AwardsEvent:
    candidate = _validate_event({**event.to_document(), "categories": [c.to_document() for c in categories]})
    document = await store.update(
        EVENTS_COLLECTION,
        event.id,
        {"categories": [category.to_document() for category in candidate.categories]},
    )
    return AwardsEvent.model_validate(document)


def _require_category(event: AwardsEvent, category_id: str) -> Category:
    category = event.get_category(category_id)
    if category is None:
        raise NotFoundError("Category not found.", details={"event_id": event.id, "category_id": category_id})
    return category


def _replace_category(event: AwardsEvent, updated: Category) -> list[Category]:
    return [updated if category.id == updated.id else category for category in event.categories]


# ===============================
#            EVENTS
# ===============================

async def create_event(
    store: DocumentStore,
    event_id: str,
    name: str,
    date: dt.date | dt.datetime | str,
    is_active: bool = True,
    lock_override: LockOverride | str | None = LockOverride.AUTO,
    categories: Optional[Iterable[Category | Mapping[str, Any]]] = None,
) -> AwardsEvent:
    """
    Create a new awards event.

    Raises:
        InvalidInputError: The id is taken, or a field fails validation.
    """
    if not event_id or not name or not name.strip():
        raise InvalidInputError("An event needs an id and a name.")
    if await store.get(EVENTS_COLLECTION, event_id) is not None:
        raise InvalidInputError("An event with this id already exists.", details={"event_id": event_id})

    if isinstance(lock_override, LockOverride):
        lock_override = lock_override.value
    event = _validate_event({
        "id": event_id,
        "name": name.strip(),
        "date": date,
        "isActive": is_active,
        "lockOverride": lock_override,
        "categories": [
            category.to_document() if isinstance(category, Category) else dict(category)
            for category in (categories or [])
        ],
    })
    document = event.to_document()
    document.pop("id")
    await store.set(EVENTS_COLLECTION, event_id, document)
    logger.info("Created awards event %s (%s)", event_id, event.date)
    return event


async def update_event(
    store: DocumentStore,
    event_id: str,
    name: Optional[str] = None,
    date: dt.date | dt.datetime | str | None = None,
    is_active: Optional[bool] = None,
    lock_override: LockOverride | str | None = None,
) -> AwardsEvent:
    """
    Edit an event's top-level fields. Arguments left as None are unchanged;
    pass LockOverride.AUTO to clear a manual lock.
    """
    event = await fetch_event(store, event_id)

    changes: dict[str, Any] = {}
    if name is not None:
        if not name.strip():
            raise InvalidInputError("Event name cannot be empty.")
        changes["name"] = name.strip()
    if date is not None:
        changes["date"] = date
    if is_active is not None:
        changes["isActive"] = is_active
    if lock_override is not None:
        changes["lockOverride"] = lock_override.value if isinstance(lock_override, LockOverride) else lock_override
    if not changes:
        return event

    updated = _validate_event({**event.to_document(), **changes})
    document = updated.to_document()
    await store.update(EVENTS_COLLECTION, event_id, {key: document[key] for key in changes})
    logger.info("Updated awards event %s: %s", event_id, sorted(changes))
    return updated


async def delete_event(store: DocumentStore, event_id: str) -> None:
    await fetch_event(store, event_id)
    await store.delete(EVENTS_COLLECTION, event_id)
    logger.info("Deleted awards event %s", event_id)


# ===============================
#          CATEGORIES
# ===============================

async def add_category(
    store: DocumentStore,
    event_id: str,
    category_id: str,
    name: str,
    awards_rating_key: str,
) -> AwardsEvent:
    """Append an empty category to the end of the event's category list."""
    event = await fetch_event(store, event_id)
    if event.get_category(category_id) is not None:
        raise InvalidInputError("Category already exists.", details={"category_id": category_id})

    category = Category(id=category_id, name=name, awards_rating_key=awards_rating_key)
    return await _save_categories(store, event, [*event.categories, category])


async def remove_category(store: DocumentStore, event_id: str, category_id: str) -> AwardsEvent:
    event = await fetch_event(store, event_id)
    _require_category(event, category_id)
    return await _save_categories(store, event, [c for c in event.categories if c.id != category_id])


async def reorder_categories(store: DocumentStore, event_id: str, category_ids: list[str]) -> AwardsEvent:
    """
    Put the event's categories in the given order.

    Raises:
        InvalidInputError: `category_ids` is not a permutation of the
            event's current category ids.
    """
    event = await fetch_event(store, event_id)
    current = [category.id for category in event.categories]
    if len(category_ids) != len(current) or set(category_ids) != set(current):
        raise InvalidInputError(
            "The new order must list every existing category exactly once.",
            details={"current": current, "requested": list(category_ids)},
        )

    by_id = {category.id: category for category in event.categories}
    return await _save_categories(store, event, [by_id[category_id] for category_id in category_ids])


# ===============================
#           NOMINEES
# ===============================

async def add_nominee(
    store: DocumentStore,
    event_id: str,
    category_id: str,
    nominee: Nominee | Mapping[str, Any],
) -> AwardsEvent:
    event = await fetch_event(store, event_id)
    category = _require_category(event, category_id)
    if not isinstance(nominee, Nominee):
        try:
            nominee = Nominee.model_validate(nominee)
        except ValidationError as exc:
            raise InvalidInputError("Invalid nominee.", details={"errors": exc.errors(include_url=False)}) from exc

    if category.get_nominee(nominee.tmdb_id) is not None:
        raise InvalidInputError(
            "This movie is already nominated in the category.",
            details={"category_id": category_id, "tmdb_id": nominee.tmdb_id},
        )

    updated = category.model_copy(update={"nominees": [*category.nominees, nominee]})
    return await _save_categories(store, event, _replace_category(event, updated))


async def remove_nominee(store: DocumentStore, event_id: str, category_id: str, tmdb_id: int) -> AwardsEvent:
    """Drop a nominee. A winner pointing at it is cleared as well."""
    event = await fetch_event(store, event_id)
    category = _require_category(event, category_id)
    if category.get_nominee(tmdb_id) is None:
        raise NotFoundError("Nominee not found in this category.", details={"tmdb_id": tmdb_id})

    winner = None if category.winner_tmdb_id == tmdb_id else category.winner_tmdb_id
    updated = category.model_copy(update={
        "nominees": [n for n in category.nominees if n.tmdb_id != tmdb_id],
        "winner_tmdb_id": winner,
    })
    return await _save_categories(store, event, _replace_category(event, updated))


async def update_nominee(
    store: DocumentStore,
    event_id: str,
    category_id: str,
    tmdb_id: int,
    updates: Mapping[str, Any],
) -> AwardsEvent:
    """Edit a nominee's title, role description or poster."""
    unknown = set(updates) - _EDITABLE_NOMINEE_FIELDS
    if unknown:
        raise InvalidInputError("Only title, name and poster_path can be edited.", details={"fields": sorted(unknown)})

    event = await fetch_event(store, event_id)
    category = _require_category(event, category_id)
    nominee = category.get_nominee(tmdb_id)
    if nominee is None:
        raise NotFoundError("Nominee not found in this category.", details={"tmdb_id": tmdb_id})

    edited = nominee.model_copy(update=dict(updates))
    updated = category.model_copy(update={
        "nominees": [edited if n.tmdb_id == tmdb_id else n for n in category.nominees],
    })
    return await _save_categories(store, event, _replace_category(event, updated))


async def set_winner(
    store: DocumentStore,
    event_id: str,
    category_id: str,
    tmdb_id: Optional[int],
) -> AwardsEvent:
    """Declare (or with None, clear) a category's winner."""
    event = await fetch_event(store, event_id)
    category = _require_category(event, category_id)
    if tmdb_id is not None and category.get_nominee(tmdb_id) is None:
        raise InvalidInputError("The winner must be one of the category's nominees.", details={"tmdb_id": tmdb_id})

    updated = category.model_copy(update={"winner_tmdb_id": tmdb_id})
    logger.info("Winner for %s/%s set to %s", event_id, category_id, tmdb_id)
    return await _save_categories(store, event, _replace_category(event, updated))


# ===============================
#            SEEDING
# ===============================

def default_categories() -> list[Category]:
    return [
        Category(id=category_id, name=name, awards_rating_key=rating_key)
        for category_id, name, rating_key in DEFAULT_CATEGORIES
    ]


async def seed_awards_season(
    store: DocumentStore,
    schedule: Iterable[tuple[str, str, str]] = DEFAULT_SEASON_SCHEDULE,
    overwrite: bool = False,
) -> list[AwardsEvent]:
    """
    Create the season's events, each with the default category set.

    Existing events are left alone unless `overwrite` is set, so seeding
    twice never wipes nominees or winners.

    Returns:
        The events that were written.
    """
    written: list[AwardsEvent] = []
    for event_id, name, date in schedule:
        if await store.get(EVENTS_COLLECTION, event_id) is not None:
            if not overwrite:
                logger.info("Skipping existing awards event %s", event_id)
                continue
            await store.delete(EVENTS_COLLECTION, event_id)
        written.append(await create_event(store, event_id, name, date, categories=default_categories()))

    logger.info("Seeded %d awards events", len(written))
    return written
