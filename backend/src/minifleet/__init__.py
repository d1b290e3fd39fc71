"""MiniFleet backend: subscription reconciliation and maintenance reminders."""
