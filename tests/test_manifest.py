"""Tests for manifest rendering and checksum stamping"""

import pytest
import yaml

from homekube.engine.state import sha256_text
from homekube.errors import ConfigError
from homekube.plans import manifests
from homekube.system import manifest


class TestManifest:
    """Test manifest helpers"""

    def test_stamp_preserves_annotations(self):
        """Test stamping keeps existing annotations and adds the checksum"""
        content = manifest.render(
            [{"apiVersion": "v1", "kind": "Service", "metadata": {"name": "a", "annotations": {"x": "y"}}}]
        )
        stamped, checksum = manifest.stamp(content)
        (doc,) = yaml.safe_load_all(stamped)
        assert checksum == sha256_text(content)
        assert doc["metadata"]["annotations"] == {"x": "y", manifest.CHECKSUM_ANNOTATION: checksum}

    def test_checksum_tracks_content(self):
        """Test a changed manifest gets a different checksum"""
        _, first = manifest.stamp(manifests.namespace("monitoring"))
        _, again = manifest.stamp(manifests.namespace("monitoring"))
        _, other = manifest.stamp(manifests.namespace("database"))
        assert first == again
        assert first != other

    def test_parse_rejects_invalid(self):
        """Test malformed YAML and nameless documents are rejected"""
        with pytest.raises(ConfigError):
            manifest.parse("kind: [unclosed")
        with pytest.raises(ConfigError):
            manifest.parse("kind: Service\nmetadata: {}\n")

    def test_checksum_of_unstamped(self):
        """Test an object without the annotation has no checksum"""
        assert manifest.checksum_of({"metadata": {"name": "a"}}) is None


class TestBuiltManifests:
    """Test the manifests the plans deploy"""

    def test_traefik_config(self):
        """Test the ACME resolver arguments carry the e-mail address"""
        (doc,) = manifest.parse(manifests.traefik_config("admin@example.com"))
        assert doc["kind"] == "HelmChartConfig"
        assert doc["metadata"] == {"name": "traefik", "namespace": "kube-system"}
        values = yaml.safe_load(doc["spec"]["valuesContent"])
        assert "--certificatesresolvers.letsencrypt.acme.email=admin@example.com" in values["globalArguments"]
        assert "--certificatesresolvers.letsencrypt.acme.httpchallenge.entrypoint=web" in values["globalArguments"]

    def test_loki(self):
        """Test Loki storage and service"""
        statefulset, service = manifest.parse(manifests.loki())
        claim = statefulset["spec"]["volumeClaimTemplates"][0]["spec"]
        assert claim["storageClassName"] == "nfs-client"
        assert claim["resources"]["requests"]["storage"] == "100Gi"
        assert service["spec"]["ports"] == [{"port": 3100, "targetPort": 3100}]

    def test_mysql_on_control_plane(self):
        """Test MySQL tolerates the control-plane taint by default"""
        service, statefulset = manifest.parse(manifests.mysql())
        assert service["spec"]["clusterIP"] == "None"
        pod = statefulset["spec"]["template"]["spec"]
        assert pod["tolerations"][0]["key"] == "node-role.kubernetes.io/control-plane"
        assert "affinity" not in pod
        assert pod["containers"][0]["image"] == "mysql:8.0"

    def test_mysql_on_dedicated_node(self):
        """Test MySQL tolerates the database taint and is pinned to its node"""
        _, statefulset = manifest.parse(manifests.mysql(node="db1"))
        pod = statefulset["spec"]["template"]["spec"]
        assert pod["tolerations"] == [{"key": "app-type", "operator": "Equal", "value": "db", "effect": "NoSchedule"}]
        terms = pod["affinity"]["nodeAffinity"]["requiredDuringSchedulingIgnoredDuringExecution"]["nodeSelectorTerms"]
        assert terms[0]["matchExpressions"][0]["values"] == ["db1"]

    def test_promtail_objects(self):
        """Test promtail ships with its config and RBAC"""
        kinds = [d["kind"] for d in manifest.parse(manifests.promtail())]
        assert kinds == ["DaemonSet", "ConfigMap", "ServiceAccount", "ClusterRole", "ClusterRoleBinding"]
