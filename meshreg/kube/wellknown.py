"""Well-known label and annotation keys read by the controller."""

# Node topology labels, GA keys first
NODE_REGION_LABEL_GA = "topology.kubernetes.io/region"
NODE_ZONE_LABEL_GA = "topology.kubernetes.io/zone"
NODE_REGION_LABEL = "failure-domain.beta.kubernetes.io/region"
NODE_ZONE_LABEL = "failure-domain.beta.kubernetes.io/zone"
TOPOLOGY_SUBZONE_LABEL = "topology.istio.io/subzone"
NODE_HOSTNAME_LABEL = "kubernetes.io/hostname"

# Mesh topology labels
LOCALITY_LABEL = "istio-locality"
TOPOLOGY_NETWORK_LABEL = "topology.istio.io/network"
TOPOLOGY_CLUSTER_LABEL = "topology.istio.io/cluster"
TLS_MODE_LABEL = "security.istio.io/tlsMode"
SIDECAR_STATUS_ANNOTATION = "sidecar.istio.io/status"

# Service annotations
NODE_SELECTOR_ANNOTATION = "traffic.istio.io/nodeSelector"
EXPORT_TO_ANNOTATION = "networking.istio.io/exportTo"
GATEWAY_PORT_LABEL = "networking.istio.io/gatewayPort"

# EndpointSlice ownership
SERVICE_NAME_LABEL = "kubernetes.io/service-name"

# Multi-cluster services
MCS_GROUP = "multicluster.x-k8s.io"
SERVICE_EXPORT_CRD = f"serviceexports.{MCS_GROUP}"
SERVICE_IMPORT_CRD = f"serviceimports.{MCS_GROUP}"
CLUSTERSET_DOMAIN = "clusterset.local"

# Resource kind names used for event accounting
KIND_NAMESPACES = "Namespaces"
KIND_SERVICES = "Services"
KIND_PODS = "Pods"
KIND_NODES = "Nodes"
KIND_ENDPOINTS = "Endpoints"
KIND_ENDPOINT_SLICES = "EndpointSlices"
KIND_SERVICE_EXPORTS = "ServiceExports"
KIND_SERVICE_IMPORTS = "ServiceImports"
KIND_CRDS = "CustomResourceDefinitions"
