"""
Outreach Service

Audience segmentation and bulk-message campaign microservice providing:
- Composable AND/OR rule trees over customer attributes
- Reusable segments with live audience previews
- Campaign lifecycle (draft, scheduled, active, completed, failed, cancelled)
- Scheduled dispatch with worker-pool backpressure and bounded retry
- Per-recipient delivery tracking reconciled from broker receipts

Port: 8252
"""

__version__ = "1.0.0"
__service__ = "outreach_service"
