"""Provisioning error taxonomy."""


class ProvisioningAborted(Exception):
    """Stops the create flow. The message becomes the session's error frame."""


class PermissionCheckFailed(ProvisioningAborted):
    """Caller lacks IAM permissions, or the permission check itself failed."""


class ClusterAlreadyExists(ProvisioningAborted):
    pass


class ClusterCheckFailed(ProvisioningAborted):
    """The existence check failed for a reason other than 'not found'."""


class ClusterCreationFailed(ProvisioningAborted):
    pass


class AddonStepFailed(RuntimeError):
    """An optional post-create step failed; the flow continues without it."""


class ArtifactDownloadFailed(AddonStepFailed):
    """A release manifest or policy document could not be fetched."""
