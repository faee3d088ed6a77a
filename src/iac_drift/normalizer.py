"""
Maps format-specific resource types onto one cross-format taxonomy.

All lookups are static tables; nothing here touches the network or the
filesystem.
"""
from typing import Dict, Optional, Tuple

from .models import Severity, SourceFormat

TERRAFORM_TYPE_MAP: Dict[str, str] = {
    # AWS
    "aws_instance": "ec2_instance",
    "aws_ebs_volume": "ebs_volume",
    "aws_security_group": "security_group",
    "aws_network_interface": "network_interface",
    "aws_s3_bucket": "s3_bucket",
    "aws_s3_bucket_policy": "s3_bucket_policy",
    "aws_s3_bucket_acl": "s3_bucket_acl",
    "aws_iam_role": "iam_role",
    "aws_iam_policy": "iam_policy",
    "aws_iam_user": "iam_user",
    "aws_iam_group": "iam_group",
    "aws_vpc": "vpc",
    "aws_subnet": "subnet",
    "aws_route_table": "route_table",
    "aws_internet_gateway": "internet_gateway",
    "aws_nat_gateway": "nat_gateway",
    "aws_db_instance": "rds_instance",
    "aws_db_cluster": "rds_cluster",
    "aws_rds_cluster": "rds_cluster",
    "aws_lambda_function": "lambda_function",
    "aws_kms_key": "kms_key",
    "aws_secretsmanager_secret": "secrets_manager_secret",
    # GCP
    "google_compute_instance": "gce_instance",
    "google_compute_disk": "gce_disk",
    "google_compute_firewall": "gce_firewall",
    "google_compute_network": "gce_network",
    "google_storage_bucket": "gcs_bucket",
    "google_storage_bucket_iam": "gcs_bucket_iam",
    "google_service_account": "gcp_service_account",
    "google_project_iam_binding": "gcp_iam_binding",
    # Azure
    "azurerm_virtual_machine": "azure_vm",
    "azurerm_linux_virtual_machine": "azure_vm",
    "azurerm_windows_virtual_machine": "azure_vm",
    "azurerm_virtual_machine_scale_set": "azure_vmss",
    "azurerm_storage_account": "azure_storage_account",
    "azurerm_storage_container": "azure_storage_container",
    "azurerm_virtual_network": "azure_vnet",
    "azurerm_subnet": "azure_subnet",
    "azurerm_network_security_group": "azure_nsg",
    # Kubernetes provider
    "kubernetes_deployment": "k8s_deployment",
    "kubernetes_service": "k8s_service",
    "kubernetes_pod": "k8s_pod",
    "kubernetes_namespace": "k8s_namespace",
    "kubernetes_config_map": "k8s_configmap",
    "kubernetes_secret": "k8s_secret",
    "kubernetes_ingress": "k8s_ingress",
}

CLOUDFORMATION_TYPE_MAP: Dict[str, str] = {
    # EC2 / VPC
    "AWS::EC2::Instance": "ec2_instance",
    "AWS::EC2::Volume": "ebs_volume",
    "AWS::EC2::SecurityGroup": "security_group",
    "AWS::EC2::NetworkInterface": "network_interface",
    "AWS::EC2::EIP": "elastic_ip",
    "AWS::EC2::KeyPair": "key_pair",
    "AWS::EC2::VPC": "vpc",
    "AWS::EC2::Subnet": "subnet",
    "AWS::EC2::RouteTable": "route_table",
    "AWS::EC2::InternetGateway": "internet_gateway",
    "AWS::EC2::NatGateway": "nat_gateway",
    "AWS::EC2::VPCGatewayAttachment": "vpc_gateway_attachment",
    # S3
    "AWS::S3::Bucket": "s3_bucket",
    "AWS::S3::BucketPolicy": "s3_bucket_policy",
    # IAM
    "AWS::IAM::Role": "iam_role",
    "AWS::IAM::Policy": "iam_policy",
    "AWS::IAM::User": "iam_user",
    "AWS::IAM::Group": "iam_group",
    "AWS::IAM::InstanceProfile": "iam_instance_profile",
    "AWS::IAM::ManagedPolicy": "iam_managed_policy",
    # RDS
    "AWS::RDS::DBInstance": "rds_instance",
    "AWS::RDS::DBCluster": "rds_cluster",
    "AWS::RDS::DBSubnetGroup": "rds_subnet_group",
    "AWS::RDS::DBParameterGroup": "rds_parameter_group",
    # Lambda
    "AWS::Lambda::Function": "lambda_function",
    "AWS::Lambda::Permission": "lambda_permission",
    "AWS::Lambda::EventSourceMapping": "lambda_event_source_mapping",
    # Load balancing and scaling
    "AWS::ElasticLoadBalancing::LoadBalancer": "elb",
    "AWS::ElasticLoadBalancingV2::LoadBalancer": "alb",
    "AWS::ElasticLoadBalancingV2::TargetGroup": "target_group",
    "AWS::ElasticLoadBalancingV2::Listener": "alb_listener",
    "AWS::AutoScaling::AutoScalingGroup": "autoscaling_group",
    "AWS::AutoScaling::LaunchConfiguration": "launch_configuration",
    # Monitoring
    "AWS::CloudWatch::Alarm": "cloudwatch_alarm",
    "AWS::Logs::LogGroup": "cloudwatch_log_group",
    # Data and messaging
    "AWS::DynamoDB::Table": "dynamodb_table",
    "AWS::SNS::Topic": "sns_topic",
    "AWS::SNS::Subscription": "sns_subscription",
    "AWS::SQS::Queue": "sqs_queue",
    # Containers
    "AWS::ECS::Cluster": "ecs_cluster",
    "AWS::ECS::Service": "ecs_service",
    "AWS::ECS::TaskDefinition": "ecs_task_definition",
    "AWS::EKS::Cluster": "eks_cluster",
    "AWS::EKS::Nodegroup": "eks_nodegroup",
    # Edge, DNS, secrets
    "AWS::CloudFront::Distribution": "cloudfront_distribution",
    "AWS::Route53::HostedZone": "route53_hosted_zone",
    "AWS::Route53::RecordSet": "route53_record",
    "AWS::SecretsManager::Secret": "secrets_manager_secret",
    "AWS::KMS::Key": "kms_key",
    "AWS::KMS::Alias": "kms_alias",
}

KUBERNETES_KIND_MAP: Dict[str, str] = {
    "Pod": "k8s_pod",
    "Deployment": "k8s_deployment",
    "StatefulSet": "k8s_statefulset",
    "DaemonSet": "k8s_daemonset",
    "ReplicaSet": "k8s_replicaset",
    "Job": "k8s_job",
    "CronJob": "k8s_cronjob",
    "Service": "k8s_service",
    "Ingress": "k8s_ingress",
    "IngressClass": "k8s_ingress_class",
    "ConfigMap": "k8s_configmap",
    "Secret": "k8s_secret",
    "PersistentVolume": "k8s_persistent_volume",
    "PersistentVolumeClaim": "k8s_persistent_volume_claim",
    "StorageClass": "k8s_storage_class",
    "ServiceAccount": "k8s_service_account",
    "Role": "k8s_role",
    "RoleBinding": "k8s_role_binding",
    "ClusterRole": "k8s_cluster_role",
    "ClusterRoleBinding": "k8s_cluster_role_binding",
    "NetworkPolicy": "k8s_network_policy",
    "Endpoints": "k8s_endpoints",
    "Namespace": "k8s_namespace",
    "Node": "k8s_node",
    "ResourceQuota": "k8s_resource_quota",
    "LimitRange": "k8s_limit_range",
    "HorizontalPodAutoscaler": "k8s_hpa",
    "VerticalPodAutoscaler": "k8s_vpa",
    "PodDisruptionBudget": "k8s_pdb",
    "CustomResourceDefinition": "k8s_crd",
}

PROVIDER_ALIASES: Dict[str, str] = {
    "google": "gcp",
    "google-beta": "gcp",
    "azurerm": "azure",
    "azuread": "azure",
    "azapi": "azure",
    "k8s": "kubernetes",
}

# Types whose drift matters more than the default. Consulted when resources
# are built; the engine only ever raises severity from these.
SEVERITY_HINTS: Dict[str, Severity] = {
    "kms_key": Severity.CRITICAL,
    "secrets_manager_secret": Severity.CRITICAL,
    "security_group": Severity.HIGH,
    "iam_role": Severity.HIGH,
    "iam_policy": Severity.HIGH,
    "iam_user": Severity.HIGH,
    "iam_group": Severity.HIGH,
    "iam_managed_policy": Severity.HIGH,
    "s3_bucket_policy": Severity.HIGH,
    "s3_bucket_acl": Severity.HIGH,
    "gce_firewall": Severity.HIGH,
    "gcs_bucket_iam": Severity.HIGH,
    "gcp_iam_binding": Severity.HIGH,
    "azure_nsg": Severity.HIGH,
    "k8s_secret": Severity.HIGH,
    "k8s_network_policy": Severity.HIGH,
    "k8s_role": Severity.HIGH,
    "k8s_role_binding": Severity.HIGH,
    "k8s_cluster_role": Severity.HIGH,
    "k8s_cluster_role_binding": Severity.HIGH,
}


def normalize_provider_name(name: str) -> str:
    name = (name or "").strip().lower()
    return PROVIDER_ALIASES.get(name, name)


def infer_terraform_provider(raw_type: str) -> str:
    """Provider from the type prefix: "google_compute_instance" -> "gcp"."""
    if not raw_type:
        return "unknown"
    prefix = raw_type.split("_", 1)[0]
    return normalize_provider_name(prefix)


def normalize_type(source_format: SourceFormat, raw_type: str) -> Tuple[str, str]:
    """Returns (resource_type, provider) for a type as written in the source."""
    source_format = SourceFormat(source_format)
    if source_format == SourceFormat.TERRAFORM:
        return (
            TERRAFORM_TYPE_MAP.get(raw_type, raw_type),
            infer_terraform_provider(raw_type),
        )
    if source_format == SourceFormat.CLOUDFORMATION:
        return CLOUDFORMATION_TYPE_MAP.get(raw_type, raw_type), "aws"
    mapped = KUBERNETES_KIND_MAP.get(raw_type)
    if mapped is None:
        mapped = f"k8s_{raw_type}"
    return mapped, "kubernetes"


def normalize_live_type(provider: str, raw_type: str) -> str:
    """
    Best-effort taxonomy name for a type reported by an inventory.
    Inventories may report Terraform names, CloudFormation names or
    Kubernetes kinds; anything unknown comes back unchanged.
    """
    if raw_type in TERRAFORM_TYPE_MAP:
        return TERRAFORM_TYPE_MAP[raw_type]
    if raw_type in CLOUDFORMATION_TYPE_MAP:
        return CLOUDFORMATION_TYPE_MAP[raw_type]
    if normalize_provider_name(provider) == "kubernetes" and not raw_type.startswith(
        "k8s_"
    ):
        return normalize_type(SourceFormat.KUBERNETES, raw_type)[0]
    return raw_type


def severity_hint_for(resource_type: str) -> Optional[Severity]:
    return SEVERITY_HINTS.get(resource_type)
