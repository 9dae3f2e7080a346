"""Job type names (handler keys)."""

SCRAPE = "scrape-leads"
SCORE_LEAD = "score-lead"
SCORE_UNSCORED = "score-unscored"
SEND_EMAIL = "send-email"
FOLLOWUP = "send-followup"
CAMPAIGN_SWEEP = "hot-lead-campaign"
ENRICH_LEAD = "enrich-lead"
CLEANUP = "cleanup"
HEALTH_CHECK = "health-check"
