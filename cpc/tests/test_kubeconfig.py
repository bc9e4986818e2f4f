import stat

import pytest
import yaml

from cpc.errors import FatalError
from cpc.modules.kubeconfig import context_name, install_credentials, merge_kubeconfig, rewrite_admin_config

ADMIN_CONF = """
apiVersion: v1
kind: Config
clusters:
- name: kubernetes
  cluster:
    certificate-authority-data: Q0E=
    server: https://127.0.0.1:6443
users:
- name: kubernetes-admin
  user:
    client-certificate-data: Q0VSVA==
    client-key-data: S0VZ
contexts:
- name: kubernetes-admin@kubernetes
  context: {cluster: kubernetes, user: kubernetes-admin}
current-context: kubernetes-admin@kubernetes
"""


class FakeShell:
    def __init__(self, content=ADMIN_CONF):
        self.content = content
        self.reads = []

    def read_file(self, address, path):
        self.reads.append((address, path))
        return self.content


def test_rewrite_points_at_control_plane():
    config = rewrite_admin_config(ADMIN_CONF, "lab", "10.0.0.1")
    assert config["clusters"][0]["name"] == "lab"
    assert config["clusters"][0]["cluster"]["server"] == "https://10.0.0.1:6443"
    assert config["clusters"][0]["cluster"]["certificate-authority-data"] == "Q0E="
    assert config["users"][0]["name"] == "lab-admin"
    assert config["current-context"] == context_name("lab") == "kubernetes-admin@lab"


def test_rewrite_rejects_incomplete_config():
    with pytest.raises(FatalError):
        rewrite_admin_config("apiVersion: v1\nclusters: []\n", "lab", "10.0.0.1")


def test_merge_replaces_same_workspace_and_keeps_others():
    existing = merge_kubeconfig(None, rewrite_admin_config(ADMIN_CONF, "prod", "10.1.0.1"))
    existing = merge_kubeconfig(existing, rewrite_admin_config(ADMIN_CONF, "lab", "10.0.0.1"))
    merged = merge_kubeconfig(existing, rewrite_admin_config(ADMIN_CONF, "lab", "10.0.0.9"))

    assert sorted(c["name"] for c in merged["clusters"]) == ["lab", "prod"]
    lab = next(c for c in merged["clusters"] if c["name"] == "lab")
    assert lab["cluster"]["server"] == "https://10.0.0.9:6443"
    assert merged["current-context"] == "kubernetes-admin@lab"


def test_install_credentials_backs_up_and_restricts_permissions(tmp_path):
    kubeconfig = tmp_path / "kube" / "config"
    kubeconfig.parent.mkdir()
    kubeconfig.write_text(yaml.safe_dump(rewrite_admin_config(ADMIN_CONF, "prod", "10.1.0.1")))
    shell = FakeShell()

    name = install_credentials(shell, "10.0.0.1", "lab", kubeconfig)

    assert name == "kubernetes-admin@lab"
    assert shell.reads == [("10.0.0.1", "/etc/kubernetes/admin.conf")]
    assert (tmp_path / "kube" / "config.bak").exists()
    data = yaml.safe_load(kubeconfig.read_text())
    assert {c["name"] for c in data["contexts"]} == {"kubernetes-admin@prod", "kubernetes-admin@lab"}
    assert stat.S_IMODE(kubeconfig.stat().st_mode) == 0o600


def test_install_credentials_creates_missing_file(tmp_path):
    kubeconfig = tmp_path / "new" / "config"
    install_credentials(FakeShell(), "10.0.0.1", "lab", kubeconfig)
    assert kubeconfig.exists()
    assert not (tmp_path / "new" / "config.bak").exists()
