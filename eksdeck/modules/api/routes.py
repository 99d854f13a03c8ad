"""
HTTP routes for eksdeck.

Handlers validate input, call one service method and shape the response.
CLI failures become {"error", "details"} bodies through cli_error_response.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from eksdeck.context import AppContext
from eksdeck.modules.credentials import CredentialError
from eksdeck.modules.executor import CLIOutputError, CommandError
from eksdeck.modules.kube import PreconditionFailed, ResourceNotFound
from eksdeck.modules.portforward import PortForwardError

from .models import (
    ApplyManifestRequest,
    AwsCredentialsRequest,
    ClusterRef,
    ConnectionStatus,
    CountResponse,
    CreateUserMappingRequest,
    ErrorResponse,
    GrafanaUrlResponse,
    MessageResponse,
    PortForwardResponse,
    ResourceKind,
    ScaleDeploymentRequest,
    TreeResources,
    UserMapping,
    WorkerNode,
)

logger = logging.getLogger(__name__)


def get_context(request: Request) -> AppContext:
    """Dependency: the AppContext built at startup."""
    return request.app.state.context


def error_body(error: str, details: Optional[str] = None, status_code: int = 500) -> JSONResponse:
    content: Dict[str, Any] = {"error": error}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def cli_error_response(exc: Exception, resource: str, action: str) -> JSONResponse:
    """
    Map a CLI failure to an error response.

    Status:
        404 when kubectl/eksctl reports NotFound, 409 for AlreadyExists,
        500 otherwise
    """
    detail = str(exc).strip() or "Unknown error"
    message = f"Failed to {action} '{resource}': {detail}"
    logger.error(message)

    status_code = 500
    if isinstance(exc, CommandError):
        if "NotFound" in detail or "not found" in detail:
            status_code = 404
        elif "AlreadyExists" in detail or "already exists" in detail:
            status_code = 409
    return error_body(message, detail, status_code)


def create_api_router() -> APIRouter:
    """
    Create the HTTP API router.

    Returns:
        FastAPI router with AWS, EKS, Kubernetes and monitoring endpoints
    """
    router = APIRouter(
        responses={
            400: {"model": ErrorResponse, "description": "Invalid request"},
            404: {"model": ErrorResponse, "description": "Resource not found"},
            500: {"model": ErrorResponse, "description": "CLI command failed"},
        }
    )

    # --- AWS credentials ---

    @router.post("/eks-configure-aws", response_model=MessageResponse, tags=["aws"])
    async def configure_aws(body: AwsCredentialsRequest, ctx: AppContext = Depends(get_context)):
        try:
            version = await ctx.credentials.configure(
                body.access_key_id, body.secret_access_key, body.region
            )
        except CredentialError as e:
            return error_body(str(e), e.details, e.status_code)
        ctx.cache.clear_all()
        return MessageResponse(
            message=f"AWS credentials configured and eksctl verified successfully. "
            f"eksctl version: {version}"
        )

    @router.get("/eks-check-connection", response_model=ConnectionStatus, tags=["aws"])
    async def check_connection(ctx: AppContext = Depends(get_context)):
        try:
            await ctx.credentials.check_connection()
        except CredentialError as e:
            return JSONResponse(
                status_code=e.status_code, content={"connected": False, "error": str(e)}
            )
        return ConnectionStatus(connected=True, message="Connected to eksctl successfully.")

    @router.post("/eks-clear-credentials", response_model=MessageResponse, tags=["aws"])
    async def clear_credentials(ctx: AppContext = Depends(get_context)):
        result = await ctx.credentials.clear()
        ctx.cache.clear_all()
        if not result.ok:
            return error_body(
                f"Failed to clear some AWS credentials. Details: {result.describe_failures()}",
                ", ".join(result.failures),
            )
        return MessageResponse(message="AWS credentials cleared successfully.")

    # --- EKS clusters ---

    @router.get("/eks-list-clusters", tags=["eks"])
    async def list_clusters(
        force_refresh: bool = Query(False, alias="forceRefresh"),
        ctx: AppContext = Depends(get_context),
    ) -> List[Dict[str, Any]]:
        try:
            return await ctx.clusters.list_clusters(force_refresh)
        except (CommandError, CLIOutputError) as e:
            return cli_error_response(e, "EKS clusters", "list")

    @router.get("/eks-cluster-details", tags=["eks"])
    async def cluster_details(
        cluster_name: str = Query(..., alias="clusterName", min_length=1),
        region: str = Query(..., min_length=1),
        force_refresh: bool = Query(False, alias="forceRefresh"),
        ctx: AppContext = Depends(get_context),
    ) -> Dict[str, Any]:
        try:
            return await ctx.clusters.cluster_details(cluster_name, region, force_refresh)
        except (CommandError, CLIOutputError) as e:
            return cli_error_response(e, cluster_name, "get cluster details")

    @router.post("/eks-set-context", response_model=MessageResponse, tags=["eks"])
    async def set_context(body: ClusterRef, ctx: AppContext = Depends(get_context)):
        try:
            output = await ctx.clusters.set_context(body.cluster_name, body.region)
        except CommandError as e:
            return cli_error_response(e, body.cluster_name, "set kubectl context")
        return MessageResponse(
            message=f"kubectl context set to cluster '{body.cluster_name}' successfully.",
            output=output,
        )

    @router.post("/eks-create-cluster", response_model=MessageResponse, tags=["eks"])
    async def create_cluster_ack():
        return MessageResponse(message="Initiating cluster creation via WebSocket stream.")

    @router.post("/eks-delete-cluster", response_model=MessageResponse, tags=["eks"])
    async def delete_cluster_ack():
        return MessageResponse(message="Initiating cluster deletion via WebSocket stream.")

    @router.post("/kube-deploy-ebs-csi", response_model=MessageResponse, tags=["eks"])
    async def deploy_ebs_csi(body: ClusterRef, ctx: AppContext = Depends(get_context)):
        try:
            output = await ctx.clusters.deploy_ebs_csi(body.cluster_name, body.region)
        except (CommandError, CLIOutputError) as e:
            return cli_error_response(e, "AWS EBS CSI Driver", "deploy")
        ctx.kube.invalidate("storageclasses")
        return MessageResponse(message="AWS EBS CSI Driver deployed successfully.", output=output)

    @router.post("/kube-deploy-efs-csi", response_model=MessageResponse, tags=["eks"])
    async def deploy_efs_csi(body: ClusterRef, ctx: AppContext = Depends(get_context)):
        try:
            output = await ctx.clusters.deploy_efs_csi(body.cluster_name, body.region)
        except (CommandError, CLIOutputError) as e:
            return cli_error_response(e, "AWS EFS CSI Driver", "deploy")
        ctx.kube.invalidate("storageclasses")
        return MessageResponse(message="AWS EFS CSI Driver deployed successfully.", output=output)

    # --- Kubernetes resources ---

    @router.get("/kube-resources/{kind}", tags=["kubernetes"])
    async def list_resources(
        kind: ResourceKind,
        namespace: str = Query("default", min_length=1),
        force_refresh: bool = Query(False, alias="forceRefresh"),
        ctx: AppContext = Depends(get_context),
    ) -> List[Dict[str, Any]]:
        try:
            return await ctx.kube.list_resources(kind.value, namespace, force_refresh)
        except (CommandError, CLIOutputError) as e:
            return cli_error_response(e, kind.value, "list")

    @router.get("/kube-resources/{kind}/count", response_model=CountResponse, tags=["kubernetes"])
    async def count_resources(
        kind: ResourceKind,
        namespace: str = Query("default", min_length=1),
        force_refresh: bool = Query(False, alias="forceRefresh"),
        ctx: AppContext = Depends(get_context),
    ):
        try:
            count = await ctx.kube.count_resources(kind.value, namespace, force_refresh)
        except (CommandError, CLIOutputError) as e:
            return cli_error_response(e, kind.value, "get count")
        return CountResponse(count=count)

    @router.get("/kube-resources/{kind}/{name}", tags=["kubernetes"])
    async def get_resource(
        kind: ResourceKind,
        name: str,
        namespace: str = Query("default", min_length=1),
        force_refresh: bool = Query(False, alias="forceRefresh"),
        ctx: AppContext = Depends(get_context),
    ) -> Dict[str, Any]:
        try:
            return await ctx.kube.get_resource(kind.value, name, namespace, force_refresh)
        except (CommandError, CLIOutputError) as e:
            return cli_error_response(e, name, f"get {kind.value} details")

    @router.delete(
        "/kube-resources/{kind}/{name}", response_model=MessageResponse, tags=["kubernetes"]
    )
    async def delete_resource(
        kind: ResourceKind,
        name: str,
        namespace: str = Query("default", min_length=1),
        ctx: AppContext = Depends(get_context),
    ):
        try:
            output = await ctx.kube.delete_resource(kind.value, name, namespace)
        except CommandError as e:
            return cli_error_response(e, name, f"delete {kind.value}")
        return MessageResponse(message=f"{kind.value} '{name}' deleted successfully.", output=output)

    @router.post("/kube-apply", response_model=MessageResponse, tags=["kubernetes"])
    async def apply_manifest(body: ApplyManifestRequest, ctx: AppContext = Depends(get_context)):
        try:
            output = await ctx.kube.apply_manifest(body.manifest, body.namespace)
        except ResourceNotFound as e:
            return error_body(str(e), status_code=404)
        except PreconditionFailed as e:
            return error_body(str(e), status_code=400)
        except (CommandError, CLIOutputError) as e:
            return cli_error_response(e, "manifest", "apply")
        return MessageResponse(message="Manifest applied successfully.", output=output)

    @router.post("/kube-scale-deployment", response_model=MessageResponse, tags=["kubernetes"])
    async def scale_deployment(body: ScaleDeploymentRequest, ctx: AppContext = Depends(get_context)):
        try:
            output = await ctx.kube.scale_deployment(body.name, body.namespace, body.replicas)
        except CommandError as e:
            return cli_error_response(e, body.name, "scale deployment")
        return MessageResponse(
            message=f"Deployment '{body.name}' scaled to {body.replicas} replicas successfully.",
            output=output,
        )

    @router.get("/kube-tree-resources", tags=["kubernetes"])
    async def tree_resources(
        namespace: str = Query("default", min_length=1),
        force_refresh: bool = Query(False, alias="forceRefresh"),
        ctx: AppContext = Depends(get_context),
    ) -> TreeResources:
        try:
            return await ctx.kube.tree_resources(namespace, force_refresh)
        except (CommandError, CLIOutputError) as e:
            return cli_error_response(e, "all resources for tree view", "list")

    @router.get("/kube-worker-nodes", response_model=List[WorkerNode], tags=["kubernetes"])
    async def worker_nodes(
        force_refresh: bool = Query(False, alias="forceRefresh"),
        ctx: AppContext = Depends(get_context),
    ):
        try:
            return await ctx.kube.worker_nodes(force_refresh)
        except (CommandError, CLIOutputError) as e:
            return cli_error_response(e, "worker nodes", "list")

    @router.get("/kube-user-mappings", response_model=List[UserMapping], tags=["kubernetes"])
    async def user_mappings(ctx: AppContext = Depends(get_context)):
        try:
            return await ctx.kube.user_mappings()
        except (CommandError, CLIOutputError) as e:
            return cli_error_response(e, "user mappings", "list")

    @router.post(
        "/kube-create-user-mapping",
        response_model=MessageResponse,
        status_code=201,
        tags=["kubernetes"],
    )
    async def create_user_mapping(
        body: CreateUserMappingRequest, ctx: AppContext = Depends(get_context)
    ):
        try:
            await ctx.kube.create_user_mapping(
                body.iam_role_arn,
                body.kubernetes_username,
                body.namespace,
                body.role_name,
                [rule.model_dump(by_alias=True) for rule in body.rules],
            )
        except ResourceNotFound as e:
            return error_body(str(e), status_code=404)
        except (CommandError, CLIOutputError) as e:
            return cli_error_response(e, body.kubernetes_username, "create user mapping")
        return MessageResponse(
            message=f"User mapping for '{body.kubernetes_username}' created successfully."
        )

    # --- Monitoring ---

    @router.post("/kube-deploy-prometheus", response_model=MessageResponse, tags=["monitoring"])
    async def deploy_prometheus(ctx: AppContext = Depends(get_context)):
        try:
            output = await ctx.monitoring.deploy_prometheus()
        except CommandError as e:
            return cli_error_response(e, "Prometheus", "deploy")
        return MessageResponse(message="Prometheus deployed successfully.", output=output)

    @router.post("/kube-deploy-grafana", response_model=MessageResponse, tags=["monitoring"])
    async def deploy_grafana(ctx: AppContext = Depends(get_context)):
        try:
            output = await ctx.monitoring.deploy_grafana()
        except CommandError as e:
            return cli_error_response(e, "Grafana", "deploy")
        return MessageResponse(
            message="Grafana and data source deployed successfully.", output=output
        )

    @router.get("/kube-get-grafana-url", response_model=GrafanaUrlResponse, tags=["monitoring"])
    async def grafana_url(ctx: AppContext = Depends(get_context)):
        try:
            url = await ctx.kube.grafana_url()
        except ResourceNotFound as e:
            return error_body(str(e), status_code=404)
        except (CommandError, CLIOutputError) as e:
            return cli_error_response(e, "grafana-nlb-service", "get details")
        if url is None:
            return JSONResponse(
                status_code=202, content={"message": "Grafana LoadBalancer is not yet available."}
            )
        return GrafanaUrlResponse(url=url)

    @router.post("/kube-start-port-forward", response_model=PortForwardResponse, tags=["monitoring"])
    async def start_port_forward(ctx: AppContext = Depends(get_context)):
        already_active = ctx.port_forward.active
        try:
            port = await ctx.port_forward.start()
        except PortForwardError as e:
            return error_body(str(e))
        if already_active:
            return PortForwardResponse(message="Port-forwarding already active.", port=port)
        return PortForwardResponse(message="Port-forwarding started successfully.", port=port)

    @router.post("/kube-stop-port-forward", response_model=PortForwardResponse, tags=["monitoring"])
    async def stop_port_forward(ctx: AppContext = Depends(get_context)):
        if await ctx.port_forward.stop():
            return PortForwardResponse(message="Port-forwarding stopped.")
        return PortForwardResponse(message="No active port-forwarding process to stop.")

    return router
