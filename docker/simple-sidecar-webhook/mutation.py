import json
import logging

import patch_ops

logger = logging.getLogger(__name__)

ADMISSION_WEBHOOK_ANNOTATION_INJECT_KEY = "simple-sidecar.centml.ai/inject"
ADMISSION_WEBHOOK_ANNOTATION_STATUS_KEY = "simple-sidecar.cemtml.ai/status"
INJECTED_STATUS = "injected"

# System namespaces are never mutated
IGNORED_NAMESPACES = frozenset(["kube-system", "kube-public"])


class MutationDecision(object):
    __slots__ = ("required", "profile_key")

    def __init__(self, required, profile_key=""):
        self.required = required
        self.profile_key = profile_key if required else ""

    def __eq__(self, other):
        if not isinstance(other, MutationDecision):
            return NotImplemented
        return (self.required, self.profile_key) == (other.required, other.profile_key)

    def __repr__(self):
        return f"MutationDecision(required={self.required}, profile_key={self.profile_key!r})"


class PodSnapshot(object):
    """The read-only view of an admitted pod that mutation works from."""

    def __init__(self, namespace="", name="", annotations=None, init_containers=None,
                 containers=None, volumes=None):
        self.namespace = namespace or ""
        self.name = name or ""
        self.annotations = annotations
        self.init_containers = init_containers or []
        self.containers = containers or []
        self.volumes = volumes or []

    @classmethod
    def from_object(cls, obj, request_namespace=""):
        """Build a snapshot from a decoded pod object.

        Pods created by controllers carry no namespace in their metadata at
        CREATE time, so the admission request's namespace is used as fallback.
        """
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        return cls(
            namespace=metadata.get("namespace") or request_namespace,
            name=metadata.get("name") or metadata.get("generateName", ""),
            annotations=metadata.get("annotations"),
            init_containers=spec.get("initContainers"),
            containers=spec.get("containers"),
            volumes=spec.get("volumes"),
        )


class Allow(object):
    allowed = True
    patch = None

    def __eq__(self, other):
        return isinstance(other, Allow)

    def __repr__(self):
        return "Allow()"


class AllowWithPatch(object):
    allowed = True

    def __init__(self, patch):
        self.patch = patch

    def __eq__(self, other):
        return isinstance(other, AllowWithPatch) and self.patch == other.patch

    def __repr__(self):
        return f"AllowWithPatch(patch={self.patch!r})"


class Deny(object):
    allowed = False
    patch = None

    def __init__(self, message):
        self.message = message

    def __eq__(self, other):
        return isinstance(other, Deny) and self.message == other.message

    def __repr__(self):
        return f"Deny(message={self.message!r})"


def mutation_required(namespace, annotations, ignored_namespaces=IGNORED_NAMESPACES, name=""):
    """Determine whether a pod should be mutated and with which profile.

    The status annotation wins over the inject annotation, so a pod that is
    already marked as injected is never mutated twice.
    """
    if namespace in ignored_namespaces:
        logger.info(f"Skip mutation for {name} for it's in special namespace: {namespace}")
        return MutationDecision(False)

    if annotations is None:
        annotations = {}
    logger.info(f"Annotations: {annotations}")

    status = annotations.get(ADMISSION_WEBHOOK_ANNOTATION_STATUS_KEY) or ""
    previously_injected = status.lower() == INJECTED_STATUS
    if previously_injected:
        decision = MutationDecision(False)
    elif ADMISSION_WEBHOOK_ANNOTATION_INJECT_KEY in annotations:
        decision = MutationDecision(True, annotations[ADMISSION_WEBHOOK_ANNOTATION_INJECT_KEY] or "")
    else:
        decision = MutationDecision(False)

    logger.info(
        f"Mutation policy for {namespace}/{name}: previously injected: {previously_injected} "
        f"required: {decision.required}, mutation: {decision.profile_key}"
    )
    return decision


def add_volume_mounts(containers, volume_mounts):
    """Append the volume mounts to every existing container."""
    patches = []
    if not volume_mounts:
        return patches

    for i, container in enumerate(containers):
        base = patch_ops.pointer("spec", "containers", i, "volumeMounts")
        # "-" needs an existing array to append to
        if container.get("volumeMounts") is None:
            patches.append(patch_ops.add_array(base, []))
        for volume_mount in volume_mounts:
            patches.append(patch_ops.add_element(base, volume_mount))
    return patches


def add_env_vars(containers, env_vars):
    """Append the environment variables to every existing container."""
    patches = []
    if not env_vars:
        return patches

    for i, container in enumerate(containers):
        base = patch_ops.pointer("spec", "containers", i, "env")
        if container.get("env") is None:
            patches.append(patch_ops.add_array(base, []))
        for env_var in env_vars:
            op = patch_ops.add_element(base, env_var)
            logger.debug(f"add_env_vars: op={op}")
            patches.append(op)
    return patches


def add_objects(target, added, base_path):
    """Add containers or volumes to a pod spec list.

    An absent or empty list is created in one operation holding every new
    item; otherwise each item is appended in order.
    """
    if not added:
        return []
    if not target:
        return [patch_ops.add_array(base_path, added)]
    return [patch_ops.add_element(base_path, item) for item in added]


def update_annotations(target, added):
    """Set the bookkeeping annotations without disturbing existing ones."""
    patches = []
    target = target or {}
    annotations_present = bool(target)
    for key, value in added.items():
        if not annotations_present:
            patches.append(patch_ops.add_mapping("/metadata/annotations", {key: value}))
            annotations_present = True
        elif target.get(key):
            patches.append(patch_ops.replace_string(patch_ops.pointer("metadata", "annotations", key), value))
        else:
            patches.append(patch_ops.add_string(patch_ops.pointer("metadata", "annotations", key), value))
    return patches


def create_patch(pod, profile, annotations):
    """Build the ordered list of patch operations for a pod.

    Operations are meant to be applied strictly in order: container indexes
    refer to the pod as submitted, and the annotation bookkeeping always comes
    last.
    """
    patches = []
    patches.extend(add_volume_mounts(pod.containers, profile.volume_mounts))
    patches.extend(add_env_vars(pod.containers, profile.env_vars))
    patches.extend(add_objects(pod.init_containers, profile.init_containers, "/spec/initContainers"))
    patches.extend(add_objects(pod.containers, profile.containers, "/spec/containers"))
    patches.extend(add_objects(pod.volumes, profile.volumes, "/spec/volumes"))
    patches.extend(update_annotations(pod.annotations, annotations))
    return patches


def serialize_patch(patches):
    return json.dumps(patch_ops.to_json_patch(patches)).encode("utf-8")


def mutate(pod, registry, ignored_namespaces=IGNORED_NAMESPACES):
    """Decide the admission outcome for a pod.

    Policy mismatches and unknown profiles allow the pod unchanged. Only an
    internal failure to serialize the patch denies admission.
    """
    decision = mutation_required(pod.namespace, pod.annotations, ignored_namespaces, pod.name)
    if not decision.required:
        logger.info(f"Skipping mutation for {pod.namespace}/{pod.name} due to policy check")
        return Allow()

    profile = registry.lookup(decision.profile_key)
    if profile is None:
        logger.warning(
            f"Skipping mutation for {pod.namespace}/{pod.name} due to missing configuration "
            f"for mutation {decision.profile_key}"
        )
        return Allow()

    logger.debug(f"create_patch: profile {decision.profile_key}={profile}")
    bookkeeping = {ADMISSION_WEBHOOK_ANNOTATION_STATUS_KEY: INJECTED_STATUS}
    try:
        patch = serialize_patch(create_patch(pod, profile, bookkeeping))
    except (TypeError, ValueError) as e:
        logger.error(f"Failed to serialize patch for {pod.namespace}/{pod.name}: {e}")
        return Deny(str(e))

    logger.info(f"AdmissionResponse: patch={patch.decode('utf-8')}")
    return AllowWithPatch(patch)
