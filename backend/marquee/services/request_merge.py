"""
request_merge.py

Collapses episode requests that track the same series for the same requester,
approval bucket and scope into one canonical request. A whole-series request
(items without season/episode) never merges with a per-episode one.

Policy:
- canonical = earliest created_at (ties broken by id); it keeps its own status
  and notification bookkeeping
- items are unioned by (provider, season, episode); when two requests track the
  same unit the earlier request's item wins and the conflict is logged
- items are re-parented and flushed first, then the emptied duplicates are
  deleted, all in one transaction

Running it again with no new requests changes nothing.
"""
import logging
from collections import defaultdict
from typing import Callable, Dict, List, Tuple

from marquee.core.database import SessionLocal
from marquee.models import MediaRequest, RequestStatus, RequestType

logger = logging.getLogger(__name__)


def eligibility_bucket(status: str) -> str:
    """Requests awaiting approval never merge into approved ones (or vice versa)."""
    return "pending" if status == RequestStatus.PENDING else "approved"


def request_scope(req: MediaRequest) -> str:
    if all(item.season is None and item.episode is None for item in req.items):
        return "series"
    return "episodes"


class RequestMergeService:
    def __init__(self, session_factory: Callable = SessionLocal):
        self.session_factory = session_factory

    def merge_duplicates(self) -> Dict[str, int]:
        result = {"groups": 0, "merged": 0, "items_moved": 0, "conflicts": 0}
        db = self.session_factory()
        try:
            rows: List[MediaRequest] = (
                db.query(MediaRequest)
                .filter(
                    MediaRequest.request_type == RequestType.EPISODE,
                    MediaRequest.status.notin_(RequestStatus.TERMINAL),
                )
                .order_by(MediaRequest.created_at.asc(), MediaRequest.id.asc())
                .all()
            )

            groups: Dict[Tuple[int, int, str, str], List[MediaRequest]] = defaultdict(list)
            for req in rows:
                key = (req.tmdb_id, req.requested_by, eligibility_bucket(req.status), request_scope(req))
                groups[key].append(req)

            duplicates: List[MediaRequest] = []
            for key, group in groups.items():
                if len(group) < 2:
                    continue
                result["groups"] += 1
                canonical, rest = group[0], group[1:]
                moved, conflicts = self._reparent(canonical, rest)
                result["items_moved"] += moved
                result["conflicts"] += conflicts
                duplicates.extend(rest)
                logger.info(
                    f"Merging {len(rest)} duplicate request(s) for tmdb:{key[0]} user {key[1]} "
                    f"into {canonical.id} ({moved} items moved)"
                )

            if not duplicates:
                return result

            # Ownership is rewritten before any parent row goes away
            db.flush()
            for dup in duplicates:
                db.delete(dup)
            db.commit()
            result["merged"] = len(duplicates)
            return result
        except Exception as e:
            logger.error(f"Request merge failed, rolled back: {e}", exc_info=True)
            db.rollback()
            raise
        finally:
            db.close()

    def _reparent(self, canonical: MediaRequest, duplicates: List[MediaRequest]) -> Tuple[int, int]:
        moved = 0
        conflicts = 0
        kept = {item.unit: item for item in canonical.items}
        for dup in duplicates:
            for item in list(dup.items):
                existing = kept.get(item.unit)
                if existing is None:
                    canonical.items.append(item)
                    kept[item.unit] = item
                    moved += 1
                    continue
                if existing.provider_id is None and item.provider_id is not None:
                    existing.provider_id = item.provider_id
                elif item.provider_id is not None and existing.provider_id != item.provider_id:
                    conflicts += 1
                    logger.warning(
                        f"Merge conflict on {item.unit} between {canonical.id} and {dup.id}: "
                        f"provider_id {existing.provider_id} kept over {item.provider_id}"
                    )
                elif existing.status != item.status:
                    conflicts += 1
                    logger.warning(
                        f"Merge conflict on {item.unit} between {canonical.id} and {dup.id}: "
                        f"status {existing.status} kept over {item.status}"
                    )
                dup.items.remove(item)
            if canonical.tvdb_id is None and dup.tvdb_id is not None:
                canonical.tvdb_id = dup.tvdb_id
            for attr in ("poster_path", "backdrop_path", "release_year"):
                if getattr(canonical, attr) is None and getattr(dup, attr) is not None:
                    setattr(canonical, attr, getattr(dup, attr))
        return moved, conflicts
