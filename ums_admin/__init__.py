"""Settings reconciliation and live event client for Universal Media Server.

 - ``settings_reconciler``: load, diff and save the server's user settings
 - ``event_stream``: follow the server's push notifications over SSE
 - ``console``: small command-line host wiring both together
"""
