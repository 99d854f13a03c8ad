"""
Tests for cache-fronted kubectl and eksctl queries.

Uses the scripted executor so every CLI invocation is countable.
"""

import json

import pytest
import yaml

from conftest import CliResponse
from eksdeck.modules.cache import ResponseCache
from eksdeck.modules.executor import CLIOutputError, CommandError
from eksdeck.modules.kube import (
    EksClusterService,
    KubeResourceService,
    PreconditionFailed,
    ResourceNotFound,
)
from eksdeck.modules.kube.resources import TREE_KINDS, claimed_pvcs


def items(*names, **extra):
    return json.dumps({"items": [dict({"metadata": {"name": n}}, **extra) for n in names]})


@pytest.fixture
def cache(clock):
    return ResponseCache(clock=clock)


@pytest.fixture
def kube(fake_executor, cache, cache_settings):
    return KubeResourceService(fake_executor, cache, cache_settings)


@pytest.fixture
def clusters(fake_executor, cache, cache_settings):
    return EksClusterService(fake_executor, cache, cache_settings)


class TestListing:
    @pytest.mark.asyncio
    async def test_list_is_cached_until_ttl(self, kube, fake_executor, clock):
        fake_executor.register("kubectl get pods", CliResponse(stdout=items("web-0", "web-1")))

        first = await kube.list_resources("pods", "shop")
        second = await kube.list_resources("pods", "shop")

        assert [p["metadata"]["name"] for p in first] == ["web-0", "web-1"]
        assert second == first
        assert len(fake_executor.calls) == 1
        assert "--namespace=shop" in fake_executor.calls[0].argv

        clock.advance(31)
        await kube.list_resources("pods", "shop")
        assert len(fake_executor.calls) == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_cache(self, kube, fake_executor):
        fake_executor.register("kubectl get pods", CliResponse(stdout=items("a")))
        await kube.list_resources("pods")
        await kube.list_resources("pods", force_refresh=True)
        assert len(fake_executor.calls) == 2

    @pytest.mark.asyncio
    async def test_cluster_scoped_kind_has_no_namespace(self, kube, fake_executor):
        fake_executor.register("kubectl get pv ", CliResponse(stdout=items("pv-1")))

        await kube.list_resources("pvs", "ignored")

        assert fake_executor.calls[0].argv == ["kubectl", "get", "pv", "-o", "json"]

    @pytest.mark.asyncio
    async def test_count(self, kube, fake_executor):
        fake_executor.register("kubectl get deployments", CliResponse(stdout=items("a", "b", "c")))
        assert await kube.count_resources("deployments") == 3

    @pytest.mark.asyncio
    async def test_unsupported_kind(self, kube):
        with pytest.raises(ValueError, match="Unsupported resource kind"):
            await kube.list_resources("cronjobs")

    @pytest.mark.asyncio
    async def test_unparseable_output(self, kube, fake_executor):
        fake_executor.register("kubectl get pods", CliResponse(stdout="error: the server doesn't have a resource type"))
        with pytest.raises(CLIOutputError):
            await kube.list_resources("pods")


class TestMutations:
    @pytest.mark.asyncio
    async def test_delete_invalidates_kind_and_tree(self, kube, fake_executor, cache):
        fake_executor.register("kubectl get pods", CliResponse(stdout=items("web-0")))
        fake_executor.register("kubectl delete pods web-0", CliResponse(stdout='pod "web-0" deleted'))
        cache.set("tree:default", {})
        cache.set("services:list:default", [])

        await kube.list_resources("pods")
        output = await kube.delete_resource("pods", "web-0")
        await kube.list_resources("pods")

        assert output == 'pod "web-0" deleted'
        assert len(fake_executor.get_calls_matching("kubectl get pods")) == 2
        assert cache.get("tree:default", ttl=60) is None
        assert cache.get("services:list:default", ttl=60) == []

    @pytest.mark.asyncio
    async def test_scale_deployment(self, kube, fake_executor):
        fake_executor.register("kubectl scale deployment", CliResponse(stdout="deployment.apps/web scaled"))

        await kube.scale_deployment("web", "shop", 4)

        assert fake_executor.calls[0].argv == [
            "kubectl", "scale", "deployment", "web", "--replicas=4", "--namespace=shop",
        ]

    @pytest.mark.asyncio
    async def test_apply_pipes_manifest_and_clears_cache(self, kube, fake_executor, cache):
        fake_executor.register("kubectl apply -f -", CliResponse(stdout="configmap/app created"))
        cache.set("configmaps:list:default", [])
        manifest = "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: app\n"

        await kube.apply_manifest(manifest, namespace="shop")

        call = fake_executor.calls[0]
        assert call.stdin == manifest
        assert "--namespace=shop" in call.argv
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_apply_rejects_invalid_yaml(self, kube, fake_executor):
        with pytest.raises(ValueError, match="not valid YAML"):
            await kube.apply_manifest("kind: [unclosed")
        with pytest.raises(ValueError, match="needs a 'kind'"):
            await kube.apply_manifest("metadata:\n  name: x\n")
        assert fake_executor.calls == []


class TestAggregates:
    @pytest.mark.asyncio
    async def test_tree_treats_missing_kinds_as_empty(self, kube, fake_executor):
        fake_executor.register("kubectl get", CliResponse(stdout=items("x")))
        fake_executor.register(
            "kubectl get ingresses",
            CliResponse(stderr='error: the server doesn\'t have a resource type "ingresses" (NotFound)', returncode=1),
            priority=1,
        )

        tree = await kube.tree_resources("shop")

        assert set(tree) == set(TREE_KINDS)
        assert tree["ingresses"] == []
        assert len(tree["pods"]) == 1

    @pytest.mark.asyncio
    async def test_tree_fails_on_other_errors(self, kube, fake_executor):
        fake_executor.register("kubectl get", CliResponse(stdout=items()))
        fake_executor.register(
            "kubectl get secrets", CliResponse(stderr="Forbidden", returncode=1), priority=1
        )

        with pytest.raises(CommandError, match="Failed to fetch secrets: Forbidden"):
            await kube.tree_resources()

    @pytest.mark.asyncio
    async def test_worker_nodes_skip_control_plane(self, kube, fake_executor):
        nodes = {
            "items": [
                {
                    "metadata": {"name": "ip-10-0-1-5", "labels": {}},
                    "status": {
                        "conditions": [{"type": "Ready", "status": "True"}],
                        "nodeInfo": {"kubeletVersion": "v1.29.0-eks"},
                    },
                },
                {
                    "metadata": {
                        "name": "master",
                        "labels": {"node-role.kubernetes.io/control-plane": ""},
                    },
                    "status": {},
                },
            ]
        }
        fake_executor.register("kubectl get nodes", CliResponse(stdout=json.dumps(nodes)))

        workers = await kube.worker_nodes()

        assert workers == [
            {"name": "ip-10-0-1-5", "type": "worker", "status": "True", "version": "v1.29.0-eks"}
        ]

    @pytest.mark.asyncio
    async def test_user_mappings(self, kube, fake_executor):
        aws_auth = (
            "apiVersion: v1\nkind: ConfigMap\ndata:\n  mapRoles: |\n"
            "    - rolearn: arn:aws:iam::1:role/dev\n      username: dev\n"
            "    - rolearn: arn:aws:iam::1:role/ops\n      username: ops\n"
        )
        bindings = {
            "items": [
                {
                    "metadata": {"name": "dev-edit", "namespace": "shop"},
                    "roleRef": {"name": "edit"},
                    "subjects": [{"kind": "User", "name": "dev"}],
                }
            ]
        }
        fake_executor.register("configmap aws-auth", CliResponse(stdout=aws_auth))
        fake_executor.register("get rolebindings", CliResponse(stdout=json.dumps(bindings)))

        mappings = await kube.user_mappings()

        assert mappings[0]["bindings"] == [
            {"namespace": "shop", "role": "edit", "roleBindingName": "dev-edit"}
        ]
        assert mappings[1] == {
            "iamRoleArn": "arn:aws:iam::1:role/ops",
            "kubernetesUsername": "ops",
            "bindings": [],
        }

    @pytest.mark.asyncio
    async def test_user_mappings_without_aws_auth(self, kube, fake_executor):
        fake_executor.register(
            "configmap aws-auth",
            CliResponse(stderr='configmaps "aws-auth" not found', returncode=1),
        )
        assert await kube.user_mappings() == []


class TestGrafanaUrl:
    @pytest.mark.asyncio
    async def test_hostname(self, kube, fake_executor):
        service = {"status": {"loadBalancer": {"ingress": [{"hostname": "abc.elb.amazonaws.com"}]}}}
        fake_executor.register("grafana-nlb-service", CliResponse(stdout=json.dumps(service)))
        assert await kube.grafana_url() == "http://abc.elb.amazonaws.com"

    @pytest.mark.asyncio
    async def test_pending(self, kube, fake_executor):
        fake_executor.register(
            "grafana-nlb-service", CliResponse(stdout='{"status": {"loadBalancer": {}}}')
        )
        assert await kube.grafana_url() is None

    @pytest.mark.asyncio
    async def test_missing_service(self, kube, fake_executor):
        fake_executor.register(
            "grafana-nlb-service",
            CliResponse(stderr='services "grafana-nlb-service" not found', returncode=1),
        )
        with pytest.raises(ResourceNotFound):
            await kube.grafana_url()


class TestClusters:
    @pytest.mark.asyncio
    async def test_list_clusters_cached(self, clusters, fake_executor):
        fake_executor.register(
            "eksctl get clusters", CliResponse(stdout='[{"Name": "demo", "Region": "us-west-2"}]')
        )

        assert await clusters.list_clusters() == [{"Name": "demo", "Region": "us-west-2"}]
        await clusters.list_clusters()
        assert len(fake_executor.calls) == 1

        clusters.invalidate_clusters()
        await clusters.list_clusters()
        assert len(fake_executor.calls) == 2

    @pytest.mark.asyncio
    async def test_set_context_clears_every_listing(self, clusters, fake_executor, cache):
        fake_executor.register("write-kubeconfig", CliResponse(stdout="saved kubeconfig"))
        cache.set("pods:list:default", [])

        await clusters.set_context("demo", "us-west-2")

        assert len(cache) == 0
        assert fake_executor.calls[0].argv == [
            "eksctl", "utils", "write-kubeconfig", "--cluster", "demo", "--region", "us-west-2",
        ]

    @pytest.mark.asyncio
    async def test_deploy_ebs_csi_uses_created_role(self, clusters, fake_executor):
        role_arn = "arn:aws:iam::1:role/eksctl-demo-addon-iamserviceaccount-Role1"
        fake_executor.register("create iamserviceaccount", CliResponse(stdout="created"))
        fake_executor.register(
            "get iamserviceaccount",
            CliResponse(stdout=json.dumps([{"metadata": {"name": "ebs-csi-controller-sa"}, "status": {"roleARN": role_arn}}])),
        )
        fake_executor.register("create addon", CliResponse(stdout="addon created"))

        assert await clusters.deploy_ebs_csi("demo", "us-west-2") == "addon created"

        create_sa = fake_executor.get_calls_matching("create iamserviceaccount")[0]
        assert "--role-only" in create_sa.argv
        addon = fake_executor.get_calls_matching("create addon")[0]
        assert f"--service-account-role-arn={role_arn}" in addon.argv
        assert "--name=aws-ebs-csi-driver" in addon.argv

    @pytest.mark.asyncio
    async def test_deploy_efs_csi_without_role(self, clusters, fake_executor):
        fake_executor.register("create iamserviceaccount", CliResponse(stdout="created"))
        fake_executor.register("get iamserviceaccount", CliResponse(stdout="[]"))

        with pytest.raises(CLIOutputError, match="No IAM role found"):
            await clusters.deploy_efs_csi("demo", "us-west-2")

        create_sa = fake_executor.get_calls_matching("create iamserviceaccount")[0]
        assert "--override-existing-serviceaccounts" in create_sa.argv
        assert not fake_executor.was_called_with("create addon")


def pvc(phase):
    return json.dumps({"metadata": {"name": "data"}, "status": {"phase": phase}})


DEPLOYMENT_WITH_CLAIM = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: db
spec:
  template:
    spec:
      containers:
      - name: db
        image: postgres:16
      volumes:
      - name: data
        persistentVolumeClaim:
          claimName: data
"""


class TestPvcPrecondition:
    @pytest.mark.asyncio
    async def test_bound_claim_is_applied(self, kube, fake_executor):
        fake_executor.register("kubectl get pvc data", CliResponse(stdout=pvc("Bound")))
        fake_executor.register("kubectl apply -f -", CliResponse(stdout="deployment.apps/db created"))

        assert await kube.apply_manifest(DEPLOYMENT_WITH_CLAIM, namespace="shop") == (
            "deployment.apps/db created"
        )
        assert "--namespace=shop" in fake_executor.calls[0].argv
        assert fake_executor.index_of("get pvc") < fake_executor.index_of("apply -f -")

    @pytest.mark.asyncio
    async def test_pending_claim_is_usable(self, kube, fake_executor):
        fake_executor.register("kubectl get pvc", CliResponse(stdout=pvc("Pending")))
        assert await kube.check_pvc("data", "shop") == "Pending"

    @pytest.mark.asyncio
    async def test_lost_claim_blocks_apply(self, kube, fake_executor):
        fake_executor.register("kubectl get pvc data", CliResponse(stdout=pvc("Lost")))

        with pytest.raises(PreconditionFailed, match="not in a usable state. Current state: 'Lost'"):
            await kube.apply_manifest(DEPLOYMENT_WITH_CLAIM)
        assert not fake_executor.was_called_with("kubectl apply")

    @pytest.mark.asyncio
    async def test_missing_claim(self, kube, fake_executor):
        fake_executor.register(
            "kubectl get pvc data",
            CliResponse(stderr='persistentvolumeclaims "data" not found', returncode=1),
        )

        with pytest.raises(ResourceNotFound, match="'data' was not found in the 'default' namespace"):
            await kube.apply_manifest(DEPLOYMENT_WITH_CLAIM)
        assert not fake_executor.was_called_with("kubectl apply")

    def test_claims_follow_document_namespace_and_cronjobs(self):
        cronjob = {
            "kind": "CronJob",
            "metadata": {"name": "backup", "namespace": "ops"},
            "spec": {
                "jobTemplate": {
                    "spec": {
                        "template": {
                            "spec": {"volumes": [{"persistentVolumeClaim": {"claimName": "dump"}}]}
                        }
                    }
                }
            },
        }
        pod = {
            "kind": "Pod",
            "metadata": {"name": "shell"},
            "spec": {"volumes": [{"emptyDir": {}}, {"persistentVolumeClaim": {"claimName": "home"}}]},
        }

        assert claimed_pvcs([cronjob, pod], "shop") == [("dump", "ops"), ("home", "shop")]


AWS_AUTH = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: aws-auth
  namespace: kube-system
data:
  mapRoles: |
    - rolearn: arn:aws:iam::1:role/nodes
      username: system:node:{{EC2PrivateDNSName}}
      groups:
      - system:nodes
"""

READ_PODS = [{"apiGroups": [""], "resources": ["pods"], "verbs": ["get", "list"]}]


class TestCreateUserMapping:
    @pytest.mark.asyncio
    async def test_maps_role_and_binds_user(self, kube, fake_executor):
        fake_executor.register("configmap aws-auth", CliResponse(stdout=AWS_AUTH))
        fake_executor.register("kubectl apply -f -", CliResponse(stdout="configured"))

        added = await kube.create_user_mapping(
            "arn:aws:iam::1:role/dev", "dev", "shop", "Pod Reader", READ_PODS
        )

        assert added is True
        aws_auth_apply, rbac_apply = fake_executor.get_calls_matching("kubectl apply -f -")
        config = yaml.safe_load(aws_auth_apply.stdin)
        map_roles = yaml.safe_load(config["data"]["mapRoles"])
        assert [r["rolearn"] for r in map_roles] == [
            "arn:aws:iam::1:role/nodes",
            "arn:aws:iam::1:role/dev",
        ]
        assert map_roles[1] == {
            "rolearn": "arn:aws:iam::1:role/dev",
            "username": "dev",
            "groups": ["system:authenticated"],
        }

        role, binding = yaml.safe_load_all(rbac_apply.stdin)
        assert role["kind"] == "Role"
        assert role["metadata"] == {"name": "pod-reader", "namespace": "shop"}
        assert role["rules"] == READ_PODS
        assert binding["metadata"]["name"] == "dev-pod-reader-binding"
        assert binding["roleRef"]["name"] == "pod-reader"
        assert binding["subjects"] == [
            {"kind": "User", "name": "dev", "apiGroup": "rbac.authorization.k8s.io"}
        ]

    @pytest.mark.asyncio
    async def test_already_mapped_role_only_binds(self, kube, fake_executor):
        fake_executor.register("configmap aws-auth", CliResponse(stdout=AWS_AUTH))
        fake_executor.register("kubectl apply -f -", CliResponse(stdout="configured"))

        added = await kube.create_user_mapping(
            "arn:aws:iam::1:role/nodes", "ops", "shop", "viewer", READ_PODS
        )

        assert added is False
        (rbac_apply,) = fake_executor.get_calls_matching("kubectl apply -f -")
        assert [doc["kind"] for doc in yaml.safe_load_all(rbac_apply.stdin)] == ["Role", "RoleBinding"]

    @pytest.mark.asyncio
    async def test_missing_aws_auth(self, kube, fake_executor):
        fake_executor.register(
            "configmap aws-auth",
            CliResponse(stderr='configmaps "aws-auth" not found', returncode=1),
        )

        with pytest.raises(ResourceNotFound, match="aws-auth ConfigMap not found"):
            await kube.create_user_mapping("arn:aws:iam::1:role/dev", "dev", "shop", "r", READ_PODS)
        assert not fake_executor.was_called_with("kubectl apply")

    @pytest.mark.asyncio
    async def test_malformed_aws_auth_is_not_rewritten(self, kube, fake_executor):
        fake_executor.register(
            "configmap aws-auth",
            CliResponse(stdout="data:\n  mapRoles: |\n    - rolearn: [unclosed\n"),
        )

        with pytest.raises(CLIOutputError, match="Failed to parse aws-auth mapRoles as YAML"):
            await kube.create_user_mapping("arn:aws:iam::1:role/dev", "dev", "shop", "r", READ_PODS)
        assert not fake_executor.was_called_with("kubectl apply")


class TestMalformedAwsAuth:
    @pytest.mark.asyncio
    async def test_configmap_not_yaml(self, kube, fake_executor):
        fake_executor.register("configmap aws-auth", CliResponse(stdout="data: {mapRoles: [unclosed"))

        with pytest.raises(CLIOutputError, match="Failed to parse aws-auth ConfigMap as YAML") as exc:
            await kube.user_mappings()
        assert exc.value.raw == "data: {mapRoles: [unclosed"

    @pytest.mark.asyncio
    async def test_map_roles_not_yaml(self, kube, fake_executor):
        fake_executor.register(
            "configmap aws-auth",
            CliResponse(stdout="data:\n  mapRoles: |\n    - rolearn: [unclosed\n"),
        )

        with pytest.raises(CLIOutputError, match="Failed to parse aws-auth mapRoles as YAML"):
            await kube.user_mappings()
        assert not fake_executor.was_called_with("get rolebindings")
