"""External API clients: Freshsales."""

from sequencer.clients.freshsales import (
    FreshsalesClient,
    contact_url,
    search_url,
)
