from typing import Any, Dict, List, Optional

from ..models import CanonicalResource, ParseResult, SourceFormat, UnresolvedRef

# Properties that carry a CloudFormation resource's physical name.
CLOUDFORMATION_NAME_PROPERTIES: Dict[str, str] = {
    "AWS::S3::Bucket": "BucketName",
    "AWS::Lambda::Function": "FunctionName",
    "AWS::IAM::Role": "RoleName",
    "AWS::IAM::User": "UserName",
    "AWS::IAM::Group": "GroupName",
    "AWS::IAM::Policy": "PolicyName",
    "AWS::IAM::ManagedPolicy": "ManagedPolicyName",
    "AWS::DynamoDB::Table": "TableName",
    "AWS::SQS::Queue": "QueueName",
    "AWS::SNS::Topic": "TopicName",
    "AWS::RDS::DBInstance": "DBInstanceIdentifier",
    "AWS::RDS::DBCluster": "DBClusterIdentifier",
    "AWS::ECS::Cluster": "ClusterName",
    "AWS::EKS::Cluster": "Name",
    "AWS::EC2::SecurityGroup": "GroupName",
    "AWS::Logs::LogGroup": "LogGroupName",
    "AWS::SecretsManager::Secret": "Name",
    "AWS::KMS::Alias": "AliasName",
}

# Attributes that carry a Terraform resource's physical name.
TERRAFORM_NAME_ATTRIBUTES = ("name", "bucket", "function_name", "identifier", "cluster_identifier")


def _tagged(resources: List[CanonicalResource], definition_id: Optional[str], user_id: Optional[str]) -> List[CanonicalResource]:
    return [r.model_copy(update={"definition_id": definition_id, "user_id": user_id}) for r in resources]


def _map_terraform(result: ParseResult, include_data_sources: bool) -> List[CanonicalResource]:
    resources = list(result.resources)
    if include_data_sources and result.terraform is not None:
        resources.extend(result.terraform.data_sources)
    return resources


def _map_cloudformation(result: ParseResult, include_data_sources: bool) -> List[CanonicalResource]:
    return list(result.resources)


def _map_kubernetes(result: ParseResult, include_data_sources: bool) -> List[CanonicalResource]:
    return list(result.resources)


_MAPPERS = {
    SourceFormat.TERRAFORM: _map_terraform,
    SourceFormat.CLOUDFORMATION: _map_cloudformation,
    SourceFormat.KUBERNETES: _map_kubernetes,
}


def map_to_resources(
    result: ParseResult,
    definition_id: Optional[str] = None,
    user_id: Optional[str] = None,
    include_data_sources: bool = False,
) -> List[CanonicalResource]:
    """
    Resources of a parse, ready to hand to the drift engine, tagged with the
    definition and user they belong to. Terraform data sources are only
    included on request.
    """
    resources = _MAPPERS[result.source_format](result, include_data_sources)
    return _tagged(resources, definition_id, user_id)


def _literal(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (UnresolvedRef, dict, list)):
        return None
    return str(value)


def extract_resource_identifiers(resource: CanonicalResource) -> Dict[str, str]:
    """
    Names under which a declared resource may show up in an inventory.
    Only literal values are returned; references are skipped.
    """
    identifiers: Dict[str, str] = {"address": resource.address, "name": resource.name}
    configuration = resource.configuration

    if resource.source_format == SourceFormat.TERRAFORM:
        for attribute in TERRAFORM_NAME_ATTRIBUTES:
            value = _literal(configuration.get(attribute))
            if value:
                identifiers[attribute] = value
        tags = configuration.get("tags")
        if isinstance(tags, dict) and _literal(tags.get("Name")):
            identifiers["tag_name"] = _literal(tags["Name"])

    elif resource.source_format == SourceFormat.CLOUDFORMATION:
        identifiers["logical_id"] = resource.address
        name_property = CLOUDFORMATION_NAME_PROPERTIES.get(resource.raw_type)
        if name_property:
            value = _literal(configuration.get(name_property))
            if value:
                identifiers["physical_name"] = value
        tags = configuration.get("Tags")
        if isinstance(tags, list):
            for tag in tags:
                if isinstance(tag, dict) and tag.get("Key") == "Name" and _literal(tag.get("Value")):
                    identifiers["tag_name"] = _literal(tag["Value"])

    elif resource.source_format == SourceFormat.KUBERNETES:
        identifiers["kind"] = resource.raw_type
        namespace = resource.metadata.get("namespace")
        if namespace:
            identifiers["namespace"] = namespace
        for label, value in (resource.metadata.get("labels") or {}).items():
            if _literal(value):
                identifiers[f"label:{label}"] = _literal(value)

    return identifiers
