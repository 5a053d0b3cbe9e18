"""External job queue integration (Upstash QStash)."""

from parascene.services.queue.qstash import QStashClient
from parascene.services.queue.signature import verify_qstash_signature

__all__ = ["QStashClient", "verify_qstash_signature"]
