"""AWS EC2 backend: per-cluster VPC, subnet, IGW, route table and security group."""

import os
from contextlib import contextmanager

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
    WaiterError,
)

from .config import EffectiveConfig
from .errors import (
    AmbiguousTarget,
    ConfigError,
    ProviderError,
    ProviderThrottled,
    ProviderUnavailable,
)
from .network import NetworkDriver
from .providers import BaseProvider, ingress_reachability, port_in_range
from .tags import aws_filters, aws_tag_spec, resource_name, tag_value
from .types import (
    InstanceView,
    KeyProbe,
    NetworkKind,
    NetworkView,
    ProviderName,
    Reachability,
    RunState,
    StatusChecks,
)
from .utils import log, logger

UBUNTU_2404_AMI_SSM = (
    "/aws/service/canonical/ubuntu/server/24.04/stable/current/amd64/hvm/ebs-gp3/ami-id"
)
NON_TERMINATED_STATES = ["pending", "running", "stopping", "stopped", "shutting-down"]
VPC_CIDR = "10.0.0.0/16"
SUBNET_CIDR = "10.0.1.0/24"
INGRESS_PORTS = (22, 80, 443)

BOTO_CONFIG = Config(
    retries={"max_attempts": 4, "mode": "standard"},
    connect_timeout=10,
    read_timeout=60,
)

THROTTLE_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
}
DENIED_CODES = {"AccessDenied", "AccessDeniedException", "UnauthorizedOperation"}

RUN_STATES: dict[str, RunState] = {
    "pending": "pending",
    "running": "running",
    "stopping": "stopping",
    "shutting-down": "stopping",
    "stopped": "stopped",
    "terminated": "terminated",
}


def error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


@contextmanager
def aws_call(operation: str, target: str):
    """Translate botocore failures into ProviderError subclasses."""
    try:
        yield
    except ClientError as e:
        code = error_code(e)
        message = f"{code}: {e.response.get('Error', {}).get('Message', '')}"
        if code in THROTTLE_CODES:
            raise ProviderThrottled(operation, target, message) from e
        raise ProviderError(operation, target, message) from e
    except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
        raise ProviderUnavailable(operation, target, str(e)) from e
    except NoCredentialsError as e:
        raise ProviderError(
            operation, target, "no AWS credentials; set AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY"
        ) from e
    except (WaiterError, BotoCoreError) as e:
        raise ProviderError(operation, target, str(e)) from e


@contextmanager
def ignore_codes(*codes: str):
    """Swallow ClientErrors whose code means the desired end state already holds."""
    try:
        yield
    except ClientError as e:
        if error_code(e) not in codes:
            raise


class AWSNetworkDriver:
    kinds: tuple[NetworkKind, ...] = (
        "network",
        "subnet",
        "gateway",
        "route_table",
        "security_boundary",
    )

    # kind -> (name suffix, describe method, result key, id key)
    LOOKUPS = {
        "network": ("vpc", "describe_vpcs", "Vpcs", "VpcId"),
        "subnet": ("subnet", "describe_subnets", "Subnets", "SubnetId"),
        "gateway": ("igw", "describe_internet_gateways", "InternetGateways", "InternetGatewayId"),
        "route_table": ("rt", "describe_route_tables", "RouteTables", "RouteTableId"),
        "security_boundary": ("sg", "describe_security_groups", "SecurityGroups", "GroupId"),
    }

    def __init__(self, ec2, cluster: str):
        self.ec2 = ec2
        self.cluster = cluster

    def _name(self, kind: NetworkKind) -> str:
        return resource_name(self.cluster, self.LOOKUPS[kind][0])

    def find(self, kind: NetworkKind) -> str | None:
        suffix, method, result_key, id_key = self.LOOKUPS[kind]
        name = resource_name(self.cluster, suffix)
        with aws_call(method, name):
            items = getattr(self.ec2, method)(Filters=aws_filters(self.cluster, name))[result_key]
        if len(items) > 1:
            raise AmbiguousTarget(kind, self.cluster, name, [i[id_key] for i in items])
        return items[0][id_key] if items else None

    def create(self, kind: NetworkKind, view: NetworkView) -> str:
        name = self._name(kind)
        with aws_call(f"create {kind}", name):
            if kind == "network":
                vpc_id = self.ec2.create_vpc(
                    CidrBlock=VPC_CIDR, TagSpecifications=aws_tag_spec("vpc", name, self.cluster)
                )["Vpc"]["VpcId"]
                self.ec2.get_waiter("vpc_available").wait(VpcIds=[vpc_id])
                return vpc_id
            if kind == "subnet":
                return self.ec2.create_subnet(
                    VpcId=view["network_id"],
                    CidrBlock=SUBNET_CIDR,
                    TagSpecifications=aws_tag_spec("subnet", name, self.cluster),
                )["Subnet"]["SubnetId"]
            if kind == "gateway":
                return self.ec2.create_internet_gateway(
                    TagSpecifications=aws_tag_spec("internet-gateway", name, self.cluster)
                )["InternetGateway"]["InternetGatewayId"]
            if kind == "route_table":
                return self.ec2.create_route_table(
                    VpcId=view["network_id"],
                    TagSpecifications=aws_tag_spec("route-table", name, self.cluster),
                )["RouteTable"]["RouteTableId"]
            return self.ec2.create_security_group(
                GroupName=name,
                Description="vmcli cluster security group",
                VpcId=view["network_id"],
                TagSpecifications=aws_tag_spec("security-group", name, self.cluster),
            )["GroupId"]

    def reconcile(self, kind: NetworkKind, resource_id: str, view: NetworkView) -> None:
        with aws_call(f"reconcile {kind}", resource_id):
            if kind == "subnet":
                self.ec2.modify_subnet_attribute(
                    SubnetId=resource_id, MapPublicIpOnLaunch={"Value": True}
                )
            elif kind == "gateway":
                self._attach_gateway(resource_id, view["network_id"])
            elif kind == "route_table":
                self._ensure_default_route(resource_id, view["gateway_id"])
                self._ensure_association(resource_id, view["subnet_id"])
            elif kind == "security_boundary":
                for port in INGRESS_PORTS:
                    with ignore_codes("InvalidPermission.Duplicate"):
                        self.ec2.authorize_security_group_ingress(
                            GroupId=resource_id,
                            IpPermissions=[{
                                "IpProtocol": "tcp",
                                "FromPort": port,
                                "ToPort": port,
                                "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
                            }],
                        )

    def _gateway_attachments(self, igw_id: str) -> list[str]:
        with ignore_codes("InvalidInternetGatewayID.NotFound"):
            igws = self.ec2.describe_internet_gateways(InternetGatewayIds=[igw_id])[
                "InternetGateways"
            ]
            return [
                a["VpcId"]
                for igw in igws
                for a in igw.get("Attachments", [])
                if a.get("VpcId")
            ]
        return []

    def _attach_gateway(self, igw_id: str, vpc_id: str) -> None:
        if vpc_id in self._gateway_attachments(igw_id):
            return
        self.ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
        log(f"Attached internet gateway '{igw_id}' to '{vpc_id}'")

    def _ensure_default_route(self, rt_id: str, igw_id: str) -> None:
        try:
            self.ec2.create_route(
                RouteTableId=rt_id, DestinationCidrBlock="0.0.0.0/0", GatewayId=igw_id
            )
        except ClientError as e:
            if error_code(e) not in ("RouteAlreadyExists", "InvalidRoute.Duplicate"):
                raise
            self.ec2.replace_route(
                RouteTableId=rt_id, DestinationCidrBlock="0.0.0.0/0", GatewayId=igw_id
            )

    def _ensure_association(self, rt_id: str, subnet_id: str) -> None:
        tables = self.ec2.describe_route_tables(
            Filters=[{"Name": "association.subnet-id", "Values": [subnet_id]}]
        )["RouteTables"]
        for table in tables:
            if table["RouteTableId"] == rt_id:
                return
            for assoc in table.get("Associations", []):
                if assoc.get("SubnetId") == subnet_id and assoc.get("RouteTableAssociationId"):
                    self.ec2.replace_route_table_association(
                        AssociationId=assoc["RouteTableAssociationId"], RouteTableId=rt_id
                    )
                    return
        with ignore_codes("Resource.AlreadyAssociated"):
            self.ec2.associate_route_table(RouteTableId=rt_id, SubnetId=subnet_id)

    def delete(self, kind: NetworkKind, resource_id: str, view: NetworkView) -> None:
        with aws_call(f"delete {kind}", resource_id):
            if kind == "route_table":
                with ignore_codes("InvalidRouteTableID.NotFound"):
                    tables = self.ec2.describe_route_tables(RouteTableIds=[resource_id])[
                        "RouteTables"
                    ]
                    for table in tables:
                        for assoc in table.get("Associations", []):
                            if assoc.get("Main") or not assoc.get("RouteTableAssociationId"):
                                continue
                            with ignore_codes("InvalidAssociationID.NotFound"):
                                self.ec2.disassociate_route_table(
                                    AssociationId=assoc["RouteTableAssociationId"]
                                )
                    self.ec2.delete_route_table(RouteTableId=resource_id)
            elif kind == "gateway":
                for vpc_id in self._gateway_attachments(resource_id):
                    with ignore_codes(
                        "Gateway.NotAttached",
                        "InvalidInternetGatewayID.NotFound",
                        "InvalidVpcID.NotFound",
                    ):
                        self.ec2.detach_internet_gateway(
                            InternetGatewayId=resource_id, VpcId=vpc_id
                        )
                with ignore_codes("InvalidInternetGatewayID.NotFound"):
                    self.ec2.delete_internet_gateway(InternetGatewayId=resource_id)
            elif kind == "security_boundary":
                with ignore_codes("InvalidGroup.NotFound", "InvalidGroupId.NotFound"):
                    self.ec2.delete_security_group(GroupId=resource_id)
            elif kind == "subnet":
                with ignore_codes("InvalidSubnetID.NotFound"):
                    self.ec2.delete_subnet(SubnetId=resource_id)
            else:
                with ignore_codes("InvalidVpcID.NotFound"):
                    self.ec2.delete_vpc(VpcId=resource_id)


class AWSProvider(BaseProvider):
    provider_name: ProviderName = "aws"

    def __init__(self, config: EffectiveConfig, session=None):
        super().__init__(config)
        self.session = session or boto3.Session(region_name=self.region)
        self._clients: dict = {}
        self._described: dict[str, dict] = {}

    def _client(self, name: str):
        if name not in self._clients:
            self._clients[name] = self.session.client(name, config=BOTO_CONFIG)
        return self._clients[name]

    @property
    def ec2(self):
        return self._client("ec2")

    def validate_auth(self) -> None:
        log(self.describe_identity())

    def describe_identity(self) -> str:
        with aws_call("sts get-caller-identity", self.region):
            identity = self._client("sts").get_caller_identity()
        access_key_id = os.getenv("AWS_ACCESS_KEY_ID", "").strip() or "N/A (role/SSO)"
        return (
            f"AWS: region={self.region}  access_key_id={access_key_id}  "
            f"account={identity.get('Account', 'unknown')}  arn={identity.get('Arn', 'unknown')}"
        )

    def network_driver(self) -> NetworkDriver:
        return AWSNetworkDriver(self.ec2, self.cluster)

    def _view(self, instance: dict) -> InstanceView:
        self._described[instance["InstanceId"]] = instance
        return {
            "id": instance["InstanceId"],
            "name": tag_value(instance.get("Tags"), "Name") or "",
            "cluster": tag_value(instance.get("Tags"), "Cluster") or "",
            "run_state": RUN_STATES.get(instance["State"]["Name"], "unknown"),
            "public_address": instance.get("PublicIpAddress"),
            "status_checks": "unknown",
            "key_reference": instance.get("KeyName", ""),
            "zone": instance.get("Placement", {}).get("AvailabilityZone", ""),
            "size": instance.get("InstanceType", ""),
        }

    def find_instances(self, name: str | None = None) -> list[InstanceView]:
        filters = aws_filters(self.cluster, name) + [
            {"Name": "instance-state-name", "Values": NON_TERMINATED_STATES}
        ]
        views = []
        with aws_call("describe-instances", name or self.cluster):
            for page in self.ec2.get_paginator("describe_instances").paginate(Filters=filters):
                for reservation in page["Reservations"]:
                    views.extend(self._view(i) for i in reservation["Instances"])
        return views

    def _key_pair_exists(self) -> bool:
        try:
            self.ec2.describe_key_pairs(KeyNames=[self.key_name])
            return True
        except ClientError as e:
            if error_code(e) == "InvalidKeyPair.NotFound":
                return False
            raise

    def ensure_key(self) -> str:
        with aws_call("import-key-pair", self.key_name):
            if self._key_pair_exists():
                log(f"Using existing key pair: '{self.key_name}'")
            else:
                self.ec2.import_key_pair(
                    KeyName=self.key_name,
                    PublicKeyMaterial=self.public_key().encode(),
                    TagSpecifications=aws_tag_spec("key-pair", self.key_name, self.cluster),
                )
                log(f"Imported key pair: '{self.key_name}'")
        return self.key_name

    def delete_key(self) -> bool:
        with aws_call("delete-key-pair", self.key_name):
            if not self._key_pair_exists():
                return False
            with ignore_codes("InvalidKeyPair.NotFound"):
                self.ec2.delete_key_pair(KeyName=self.key_name)
        return True

    def resolve_ami(self) -> str:
        if self.config.get("ami_id"):
            return self.config["ami_id"]
        with aws_call("ssm get-parameter", UBUNTU_2404_AMI_SSM):
            ami_id = self._client("ssm").get_parameter(Name=UBUNTU_2404_AMI_SSM)["Parameter"][
                "Value"
            ]
        if not ami_id.strip():
            raise ProviderError("ssm get-parameter", UBUNTU_2404_AMI_SSM, "resolved AMI id is empty")
        return ami_id.strip()

    def create_instance(
        self, name: str, size: str, network: NetworkView, key_reference: str
    ) -> InstanceView:
        ami_id = self.resolve_ami()
        log(f"Using AMI: '{ami_id}'")
        with aws_call("run-instances", name):
            response = self.ec2.run_instances(
                ImageId=ami_id,
                InstanceType=size,
                KeyName=key_reference,
                MinCount=1,
                MaxCount=1,
                SubnetId=network["subnet_id"],
                SecurityGroupIds=[network["security_boundary_id"]],
                TagSpecifications=aws_tag_spec("instance", name, self.cluster),
            )
        instance_id = response["Instances"][0]["InstanceId"]
        log(f"Waiting for instance '{instance_id}' to start...")
        with aws_call("wait instance-running", instance_id):
            self.ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])
            described = self.ec2.describe_instances(InstanceIds=[instance_id])
        return self._view(described["Reservations"][0]["Instances"][0])

    def reboot_instance(self, instance: InstanceView) -> None:
        with aws_call("reboot-instances", instance["id"]):
            self.ec2.reboot_instances(InstanceIds=[instance["id"]])

    def terminate_instance(self, instance: InstanceView) -> None:
        with aws_call("terminate-instances", instance["id"]):
            self.ec2.terminate_instances(InstanceIds=[instance["id"]])
            log("Waiting for instance to terminate...")
            self.ec2.get_waiter("instance_terminated").wait(InstanceIds=[instance["id"]])

    def regions(self) -> list[dict]:
        with aws_call("describe-regions", self.region):
            regions = self.ec2.describe_regions()["Regions"]
        return sorted(
            (
                {"name": r["RegionName"], "opt_in_status": r.get("OptInStatus", "")}
                for r in regions
            ),
            key=lambda r: r["name"],
        )

    def zones(self, region: str | None = None) -> list[dict]:
        ec2 = self.session.client("ec2", region_name=region or self.region, config=BOTO_CONFIG)
        with aws_call("describe-availability-zones", region or self.region):
            zones = ec2.describe_availability_zones(
                Filters=[{"Name": "state", "Values": ["available"]}]
            )["AvailabilityZones"]
        return [
            {"name": z["ZoneName"], "region": z["RegionName"], "state": z["State"]}
            for z in zones
        ]

    def status_checks(self, instance: InstanceView) -> StatusChecks:
        with aws_call("describe-instance-status", instance["id"]):
            statuses = self.ec2.describe_instance_status(
                InstanceIds=[instance["id"]], IncludeAllInstances=True
            )["InstanceStatuses"]
        entry = next((s for s in statuses if s["InstanceId"] == instance["id"]), None)
        if entry is None:
            return "unknown"
        system = entry.get("SystemStatus", {}).get("Status", "unknown")
        inst = entry.get("InstanceStatus", {}).get("Status", "unknown")
        if system == "ok" and inst == "ok":
            return "passed"
        if "impaired" in (system, inst):
            return "failed"
        return "unknown"

    def ssh_ingress(self, instance: InstanceView, caller_ip: str | None) -> Reachability:
        raw = self._described.get(instance["id"], {})
        group_ids = list(dict.fromkeys(g["GroupId"] for g in raw.get("SecurityGroups", [])))
        if not group_ids:
            return "unknown"
        with aws_call("describe-security-groups", ",".join(group_ids)):
            groups = self.ec2.describe_security_groups(GroupIds=group_ids)["SecurityGroups"]

        cidrs: list[str] = []
        other_sources = False
        for group in groups:
            for perm in group.get("IpPermissions", []):
                protocol = str(perm.get("IpProtocol", "")).lower()
                if protocol != "-1" and not (
                    protocol == "tcp" and port_in_range(22, perm.get("FromPort"), perm.get("ToPort"))
                ):
                    continue
                cidrs.extend(r["CidrIp"] for r in perm.get("IpRanges", []) if r.get("CidrIp"))
                cidrs.extend(
                    r["CidrIpv6"] for r in perm.get("Ipv6Ranges", []) if r.get("CidrIpv6")
                )
                if perm.get("UserIdGroupPairs") or perm.get("PrefixListIds"):
                    other_sources = True
        if not cidrs and other_sources:
            return "unknown"
        return ingress_reachability(cidrs, caller_ip)

    def key_probe(self, instance: InstanceView, os_user: str) -> tuple[KeyProbe, str | None]:
        """Stage the cluster public key through EC2 Instance Connect (valid 60s)."""
        if not instance.get("zone"):
            return "unknown", "availability-zone-missing"
        try:
            public_key = self.public_key()
        except ConfigError as e:
            logger.debug(f"public key unavailable: {e}")
            return "unknown", "ssh-public-key-not-found"

        eic = self._client("ec2-instance-connect")
        with aws_call("send-ssh-public-key", instance["id"]):
            try:
                response = eic.send_ssh_public_key(
                    InstanceId=instance["id"],
                    InstanceOSUser=os_user,
                    SSHPublicKey=public_key,
                    AvailabilityZone=instance["zone"],
                )
            except ClientError as e:
                code = error_code(e)
                if code in THROTTLE_CODES:
                    raise
                if code in DENIED_CODES:
                    return "denied", code
                return "unsupported", code
        if response.get("Success"):
            return "ok", None
        return "denied", "success=false"
