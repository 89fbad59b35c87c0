"""Continuous Deployment Agent (CDA).

Single-node deployment agent that replaces the manual
"ssh in, pull images, restart containers, reload the proxy" routine:
 - accepts deployment requests from CI and queues them (FIFO)
 - resolves image tags to content-addressed digests
 - rolls services out blue/green: start new, health-check, switch proxy, stop old
 - rolls back on any failure and keeps an append-only deployment log
 - recovers to the last known-good deployment after a crash
"""
