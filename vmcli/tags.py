"""Resource naming and tagging conventions.

Provider tags and labels are the only record of what belongs to a cluster.
Every lookup and every create goes through the helpers here so the two always
agree.
"""

import re

MANAGED_BY = "vmcli"

NAME_TAG = "Name"
CLUSTER_TAG = "Cluster"
MANAGED_BY_TAG = "ManagedBy"

GCP_CLUSTER_LABEL = "vmcli-cluster"
GCP_NAME_LABEL = "vmcli-name"
GCP_MANAGED_LABEL = "managed-by"


def resource_name(cluster: str, suffix: str) -> str:
    return f"{cluster}-{suffix}"


def aws_tags(name: str, cluster: str) -> list[dict]:
    return [
        {"Key": NAME_TAG, "Value": name},
        {"Key": CLUSTER_TAG, "Value": cluster},
        {"Key": MANAGED_BY_TAG, "Value": MANAGED_BY},
    ]


def aws_tag_spec(resource_type: str, name: str, cluster: str) -> list[dict]:
    """TagSpecifications argument for an EC2 create call."""
    return [{"ResourceType": resource_type, "Tags": aws_tags(name, cluster)}]


def aws_filters(cluster: str, name: str | None = None) -> list[dict]:
    filters = [{"Name": f"tag:{CLUSTER_TAG}", "Values": [cluster]}]
    if name is not None:
        filters.insert(0, {"Name": f"tag:{NAME_TAG}", "Values": [name]})
    return filters


def tag_value(tags: list[dict] | None, key: str) -> str | None:
    """Return the value of `key` in an AWS-style [{Key, Value}] list."""
    for tag in tags or []:
        if tag.get("Key", tag.get("key")) == key:
            return tag.get("Value", tag.get("value"))
    return None


def gcp_label_value(value: str) -> str:
    """Sanitize a value for use as a GCE label (lowercase, [a-z0-9-], <=63).

    Underscores become dashes as they do in GCE resource names, so two names
    that map to the same instance name also share a label.
    """
    return re.sub(r"[^a-z0-9-]", "-", value.lower())[:63]


def gcp_labels(name: str, cluster: str) -> dict[str, str]:
    return {
        GCP_NAME_LABEL: gcp_label_value(name),
        GCP_CLUSTER_LABEL: gcp_label_value(cluster),
        GCP_MANAGED_LABEL: MANAGED_BY,
    }


def gcp_label_filter(cluster: str, name: str | None = None) -> str:
    expr = f"labels.{GCP_CLUSTER_LABEL} = {gcp_label_value(cluster)}"
    if name is not None:
        expr += f" AND labels.{GCP_NAME_LABEL} = {gcp_label_value(name)}"
    return expr


def do_cluster_tag(cluster: str) -> str:
    """DigitalOcean tag attached to every droplet of the cluster."""
    return f"vmcli-cluster-{re.sub(r'[^A-Za-z0-9_-]', '-', cluster)}"
