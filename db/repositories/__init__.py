"""Repository layer for the lead router.

- leads: create_if_absent (dedup gate), transition_status / claim_lead
         (optimistic lock), update_enrichment, list_leads, counts
- status_history: append-only transition audit
- sales_team: roster lookups and upserts
- campaign_events: insert-or-ignore event recording, per-campaign stats
"""
