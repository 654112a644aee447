from datetime import datetime, timezone
from typing import List, Optional

from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.bids import Bid
from models.entities.couchbase.jobs import Budget, Job, JobData, job_key_for_auction
from models.operations.cas import cas_retry


async def job_get(job_id: str) -> Optional[Job]:
    return await Job.get(job_id)


async def job_create_from_auction(auction: Auction, winning_bid: Bid) -> Job:
    """Create the job assigned to an auction's winner.

    Keyed by the auction id, so repeating the call rewrites the same job
    instead of creating a second one.
    """
    d = auction.data
    data = JobData(
        title=d.title,
        description=d.description,
        category=d.category,
        budget=Budget(
            min=winning_bid.data.amount,
            max=winning_bid.data.amount,
            currency=d.initial_offer.currency,
        ),
        client_id=d.client_id,
        handyman_id=winning_bid.data.bidder_id,
        status="assigned",
        location=d.location,
        is_urgent=d.is_urgent,
        auction_id=auction.id,
    )
    return await Job.create_or_update(job_key_for_auction(auction.id), data, user_id=d.client_id)


async def job_mark_completed(job_id: str, final_price: Optional[float] = None) -> Job:
    def _mutate(job: Job) -> Optional[bool]:
        if job.data.status == "completed":
            return False
        job.data.status = "completed"
        job.data.completed_at = datetime.now(timezone.utc)
        if final_price is not None:
            job.data.final_price = final_price
        return None

    return await cas_retry(Job, job_id, _mutate)


async def jobs_get_by_auction(auction_id: str) -> List[Job]:
    return await Job.find({"auction_id": auction_id})
