"""Telehealth Stack Reconciler (TSR).

Single-host reconciler for a multi-container telehealth stack that:
 - allocates collision-free ports, networks and domains per (project, environment)
 - starts services in dependency order, gated by readiness probes
 - moves a first-boot API token from the telehealth app into the EMR config
 - publishes reverse-proxy routes through the proxy's control API
 - tears a namespace down without touching its neighbours
"""
