"""
Notifications package — alert fanout for missing-person cases.

Modules:
    models              — enums, AlertEvent, DeliveryRecord, results
    topics              — topic naming rules and predefined topics
    escalation          — category → channels + audience table
    subscription_store  — topic subscriptions (memory / SQL)
    delivery_store      — delivery records and state machine (memory / SQL)
    directory           — user endpoints, roles, locations, contacts
    audience            — audience resolution from a plan
    dispatcher          — concurrent per-channel fanout
    background_jobs     — retry sweep, subscription cleanup
    events              — event builders for each alert category
    container           — wiring for the API process
    channels/           — realtime, push, email, SMS adapters + providers
"""
