"""
eksdeck - EKS Cluster Console Backend

Drives eksctl, kubectl and the aws CLI on behalf of a browser UI and streams
their output back over WebSockets.

Architecture:
- Each module is self-contained with clear interfaces
- Long-running work is owned by a per-connection session
- Process-wide state lives in one application context, never in module globals

Modules:
- executor: External command execution (one-shot, streaming, retry)
- cache: TTL response cache for CLI-backed reads
- session: WebSocket session, frame delivery and process bookkeeping
- provisioning: Cluster create/delete state machines
- portforward: Grafana port-forward handle
- credentials: AWS CLI credential configuration
- kube: Kubernetes resource listings and mutations
- api: HTTP models and routes
"""

__version__ = "1.0.0"
