"""Kubernetes manifests deployed by the plans"""

from typing import Any, Dict, Optional

import yaml

from ..system.manifest import render

GRAFANA_ADMIN = "admin"
GRAFANA_USER_KEY = "admin-user"
GRAFANA_PASSWORD_KEY = "admin-password"


def loki_push_url(ns: str = "monitoring") -> str:
    """Push endpoint of the loki service in namespace ns"""
    return f"http://loki.{ns}.svc.cluster.local:3100/loki/api/v1/push"


def namespace(name: str) -> str:
    return render([{"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}])


def traefik_config(email: str, resolver: str = "letsencrypt") -> str:
    """HelmChartConfig enabling the ACME http challenge on the bundled Traefik"""
    prefix = f"--certificatesresolvers.{resolver}.acme"
    values = {
        "globalArguments": [
            f"{prefix}.email={email}",
            f"{prefix}.storage=/data/acme.json",
            f"{prefix}.httpchallenge=true",
            f"{prefix}.httpchallenge.entrypoint=web",
        ]
    }
    return render(
        [
            {
                "apiVersion": "helm.cattle.io/v1",
                "kind": "HelmChartConfig",
                "metadata": {"name": "traefik", "namespace": "kube-system"},
                "spec": {"valuesContent": yaml.safe_dump(values, default_flow_style=False)},
            }
        ]
    )


def _volume_claim(name: str, storage_class: str, size: str) -> Dict[str, Any]:
    return {
        "metadata": {"name": name},
        "spec": {
            "accessModes": ["ReadWriteOnce"],
            "storageClassName": storage_class,
            "resources": {"requests": {"storage": size}},
        },
    }


def loki(ns: str = "monitoring", storage_class: str = "nfs-client", size: str = "100Gi") -> str:
    labels = {"app": "loki"}
    statefulset = {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {"name": "loki", "namespace": ns},
        "spec": {
            "serviceName": "loki",
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [
                        {
                            "name": "loki",
                            "image": "grafana/loki:latest",
                            "args": ["-config.file=/etc/loki/local-config.yaml"],
                            "ports": [{"containerPort": 3100}],
                            "volumeMounts": [{"name": "loki-storage", "mountPath": "/loki"}],
                        }
                    ]
                },
            },
            "volumeClaimTemplates": [_volume_claim("loki-storage", storage_class, size)],
        },
    }
    service = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": "loki", "namespace": ns},
        "spec": {"selector": labels, "ports": [{"port": 3100, "targetPort": 3100}]},
    }
    return render([statefulset, service])


def monitoring_values(secret: str, host: str = "") -> Dict[str, Any]:
    """kube-prometheus-stack values wiring Grafana to the generated admin secret"""
    grafana: Dict[str, Any] = {
        "admin": {"existingSecret": secret, "userKey": GRAFANA_USER_KEY, "passwordKey": GRAFANA_PASSWORD_KEY},
        "adminUser": GRAFANA_ADMIN,
    }
    if host:
        grafana["ingress"] = {
            "enabled": True,
            "hosts": [host],
            "annotations": {"traefik.ingress.kubernetes.io/router.tls.certresolver": "letsencrypt"},
        }
    return {"grafana": grafana}


_RUN_EVERYWHERE = [{"operator": "Exists", "effect": "NoSchedule"}]


def _host_path(name: str, path: str) -> Dict[str, Any]:
    return {"name": name, "hostPath": {"path": path}}


def node_exporter(ns: str = "monitoring") -> str:
    labels = {"app": "node-exporter"}
    daemonset = {
        "apiVersion": "apps/v1",
        "kind": "DaemonSet",
        "metadata": {"name": "node-exporter", "namespace": ns, "labels": labels},
        "spec": {
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "hostNetwork": True,
                    "hostPID": True,
                    "containers": [
                        {
                            "name": "node-exporter",
                            "image": "prom/node-exporter:latest",
                            "args": [
                                "--path.procfs=/host/proc",
                                "--path.sysfs=/host/sys",
                                "--path.rootfs=/host/root",
                                "--collector.filesystem.mount-points-exclude=^/(sys|proc|dev|host|etc)($|/)",
                            ],
                            "ports": [{"containerPort": 9100, "hostPort": 9100, "name": "metrics"}],
                            "resources": {
                                "requests": {"memory": "64Mi", "cpu": "50m"},
                                "limits": {"memory": "128Mi", "cpu": "100m"},
                            },
                            "volumeMounts": [
                                {"name": "proc", "mountPath": "/host/proc", "readOnly": True},
                                {"name": "sys", "mountPath": "/host/sys", "readOnly": True},
                                {"name": "root", "mountPath": "/host/root", "readOnly": True},
                            ],
                            "securityContext": {"runAsNonRoot": True, "runAsUser": 65534},
                        }
                    ],
                    "volumes": [_host_path("proc", "/proc"), _host_path("sys", "/sys"), _host_path("root", "/")],
                    "tolerations": _RUN_EVERYWHERE,
                },
            },
        },
    }
    return render([daemonset])


def _promtail_config(push_url: str) -> str:
    config = {
        "server": {"http_listen_port": 3101},
        "positions": {"filename": "/tmp/positions.yaml"},
        "clients": [{"url": push_url}],
        "scrape_configs": [
            {
                "job_name": "kubernetes-pods",
                "kubernetes_sd_configs": [{"role": "pod"}],
                "pipeline_stages": [{"cri": {}}],
                "relabel_configs": [
                    {"source_labels": ["__meta_kubernetes_pod_node_name"], "target_label": "__host__"},
                    {"action": "labelmap", "regex": "__meta_kubernetes_pod_label_(.+)"},
                    {"source_labels": ["__meta_kubernetes_namespace"], "target_label": "namespace"},
                    {"source_labels": ["__meta_kubernetes_pod_name"], "target_label": "pod"},
                    {"source_labels": ["__meta_kubernetes_pod_container_name"], "target_label": "container"},
                    {
                        "source_labels": ["__meta_kubernetes_pod_uid", "__meta_kubernetes_pod_container_name"],
                        "separator": "/",
                        "replacement": "/var/log/pods/*$1/*.log",
                        "target_label": "__path__",
                    },
                ],
            }
        ],
    }
    return yaml.safe_dump(config, default_flow_style=False, sort_keys=False)


def promtail(ns: str = "monitoring", push_url: Optional[str] = None) -> str:
    push_url = push_url or loki_push_url(ns)
    labels = {"app": "promtail"}
    daemonset = {
        "apiVersion": "apps/v1",
        "kind": "DaemonSet",
        "metadata": {"name": "promtail", "namespace": ns, "labels": labels},
        "spec": {
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "serviceAccountName": "promtail",
                    "containers": [
                        {
                            "name": "promtail",
                            "image": "grafana/promtail:latest",
                            "args": ["-config.file=/etc/promtail/config.yml"],
                            "ports": [{"containerPort": 3101, "name": "http-metrics"}],
                            "resources": {
                                "requests": {"memory": "128Mi", "cpu": "50m"},
                                "limits": {"memory": "256Mi", "cpu": "100m"},
                            },
                            "volumeMounts": [
                                {"name": "config", "mountPath": "/etc/promtail"},
                                {"name": "varlog", "mountPath": "/var/log", "readOnly": True},
                                {"name": "varlogpods", "mountPath": "/var/log/pods", "readOnly": True},
                            ],
                            "securityContext": {"runAsUser": 0},
                        }
                    ],
                    "volumes": [
                        {"name": "config", "configMap": {"name": "promtail-config"}},
                        _host_path("varlog", "/var/log"),
                        _host_path("varlogpods", "/var/log/pods"),
                    ],
                    "tolerations": _RUN_EVERYWHERE,
                },
            },
        },
    }
    config_map = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "promtail-config", "namespace": ns},
        "data": {"config.yml": _promtail_config(push_url)},
    }
    service_account = {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {"name": "promtail", "namespace": ns},
    }
    cluster_role = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRole",
        "metadata": {"name": "promtail"},
        "rules": [
            {
                "apiGroups": [""],
                "resources": ["nodes", "nodes/proxy", "services", "endpoints", "pods"],
                "verbs": ["get", "list", "watch"],
            }
        ],
    }
    binding = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRoleBinding",
        "metadata": {"name": "promtail"},
        "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "ClusterRole", "name": "promtail"},
        "subjects": [{"kind": "ServiceAccount", "name": "promtail", "namespace": ns}],
    }
    return render([daemonset, config_map, service_account, cluster_role, binding])


def mysql(
    ns: str = "database",
    secret: str = "mysql-credentials",
    image: str = "mysql:8.0",
    storage_class: str = "nfs-client",
    size: str = "20Gi",
    node: Optional[str] = None,
) -> str:
    """Headless service and single-replica MySQL StatefulSet.

    With ``node`` the pod tolerates the database taint and is pinned to that
    node; otherwise it tolerates the control-plane taint.
    """
    labels = {"app": "mysql"}
    pod_spec: Dict[str, Any] = {}
    if node:
        pod_spec["tolerations"] = [{"key": "app-type", "operator": "Equal", "value": "db", "effect": "NoSchedule"}]
        pod_spec["affinity"] = {
            "nodeAffinity": {
                "requiredDuringSchedulingIgnoredDuringExecution": {
                    "nodeSelectorTerms": [
                        {"matchExpressions": [{"key": "kubernetes.io/hostname", "operator": "In", "values": [node]}]}
                    ]
                }
            }
        }
    else:
        pod_spec["tolerations"] = [
            {"key": "node-role.kubernetes.io/control-plane", "operator": "Exists", "effect": "NoSchedule"}
        ]
    pod_spec["containers"] = [
        {
            "name": "mysql",
            "image": image,
            "env": [
                {"name": "MYSQL_ROOT_PASSWORD", "valueFrom": {"secretKeyRef": {"name": secret, "key": "root-password"}}}
            ],
            "ports": [{"containerPort": 3306, "name": "mysql"}],
            "volumeMounts": [{"name": "mysql-persistent-storage", "mountPath": "/var/lib/mysql"}],
        }
    ]

    service = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": "mysql", "namespace": ns},
        "spec": {"clusterIP": "None", "selector": labels, "ports": [{"port": 3306, "name": "mysql"}]},
    }
    statefulset = {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {"name": "mysql", "namespace": ns},
        "spec": {
            "serviceName": "mysql",
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {"metadata": {"labels": labels}, "spec": pod_spec},
            "volumeClaimTemplates": [_volume_claim("mysql-persistent-storage", storage_class, size)],
        },
    }
    return render([service, statefulset])
