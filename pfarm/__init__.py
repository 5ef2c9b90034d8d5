"""Proxy Farm (pf).

Control plane for a fleet of SOCKS5 proxies, each one backed by its own
VPN container on a shared Docker host:
 - persisted proxy registry and host port allocation
 - container lifecycle (create / remove / rotate)
 - reconciliation between the registry and the containers that actually exist
 - health probing and a self-healing control loop
"""
