# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/errors.py


class StolosBootstrapError(RuntimeError):
    """Base class for cluster bootstrap failures."""


class ConfigError(StolosBootstrapError):
    """Raised when the bootstrap configuration cannot be loaded or validated."""


# ---------------------------------------------------------------------
# Persistent state
# ---------------------------------------------------------------------
class StateLoadError(StolosBootstrapError):
    """Raised when a saved snapshot exists but cannot be restored in full."""


class StateWriteError(StolosBootstrapError):
    """Raised when the snapshot or config bundle cannot be written to disk."""


# ---------------------------------------------------------------------
# Machine config issuance
# ---------------------------------------------------------------------
class GenerationError(StolosBootstrapError):
    """Raised when the config generator cannot produce a node config."""


# ---------------------------------------------------------------------
# Rendezvous (provider callbacks)
# ---------------------------------------------------------------------
class RendezvousError(StolosBootstrapError):
    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ProviderDenied(RendezvousError):
    """The provider redirected back with an explicit error parameter."""

    def __init__(self, provider: str, reason: str):
        super().__init__(provider, f"OAuth error: {reason}")
        self.reason = reason


class MalformedCallback(RendezvousError):
    """The callback carried neither a code nor an error."""

    def __init__(self, provider: str):
        super().__init__(provider, "no authorization code received")


class RendezvousCancelled(RendezvousError):
    pass


class RendezvousTimeout(RendezvousCancelled):
    pass


class RendezvousBusy(RendezvousError):
    pass


class UnknownProvider(RendezvousError):
    pass


class TokenExchangeError(RendezvousError):
    pass


class ManifestConversionError(RendezvousError):
    """GitHub refused to turn an app manifest code into app credentials."""


# ---------------------------------------------------------------------
# Cluster bootstrap and health
# ---------------------------------------------------------------------
class ClusterBootstrapError(StolosBootstrapError):
    """Raised when the one-shot bootstrap call fails."""


class HealthCheckError(StolosBootstrapError):
    """Base class for health poll failures."""


class HealthCheckServerFailure(HealthCheckError):
    """The health stream reported an embedded failure."""


class HealthCheckTimeout(HealthCheckError):
    """The cluster did not report healthy before the deadline."""


class KubeconfigError(StolosBootstrapError):
    pass


# ---------------------------------------------------------------------
# Image factory and secret propagation
# ---------------------------------------------------------------------
class ImageFactoryError(StolosBootstrapError):
    pass


class SecretSyncError(StolosBootstrapError):
    pass
