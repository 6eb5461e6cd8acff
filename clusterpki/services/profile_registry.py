"""
Static signing profiles for the cluster certificate hierarchy.
"""
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from ..models.errors import UnknownRoleError
from ..models.pki import KeySpec, SigningProfile, SERVER_AUTH, CLIENT_AUTH


ROOT = "root"
INTERMEDIATE = "intermediate"
SERVER = "server"
PEER = "peer"
CLIENT = "client"

LEAF_ROLES = (SERVER, PEER, CLIENT)


def _build_profiles(key: KeySpec) -> Dict[str, SigningProfile]:
    return {
        ROOT: SigningProfile(
            name=ROOT,
            key=key,
            validity=timedelta(hours=87600),
            is_ca=True,
        ),
        INTERMEDIATE: SigningProfile(
            name=INTERMEDIATE,
            key=key,
            validity=timedelta(hours=70080),
            is_ca=True,
            path_length=0,
            issuer_role=ROOT,
        ),
        SERVER: SigningProfile(
            name=SERVER,
            key=key,
            validity=timedelta(hours=8760),
            usages=frozenset({SERVER_AUTH}),
            requires_san=True,
            issuer_role=INTERMEDIATE,
        ),
        PEER: SigningProfile(
            name=PEER,
            key=key,
            validity=timedelta(hours=8760),
            usages=frozenset({SERVER_AUTH, CLIENT_AUTH}),
            requires_san=True,
            issuer_role=INTERMEDIATE,
        ),
        CLIENT: SigningProfile(
            name=CLIENT,
            key=key,
            validity=timedelta(hours=8760),
            usages=frozenset({CLIENT_AUTH}),
            issuer_role=INTERMEDIATE,
        ),
    }


class ProfileRegistry:
    """Lookup of the fixed signing profiles."""

    def __init__(self, key: Optional[KeySpec] = None):
        self.key = key or KeySpec()
        self._profiles = _build_profiles(self.key)
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config) -> "ProfileRegistry":
        return cls(KeySpec(
            algorithm=config.key_algorithm,
            size=config.key_size,
            curve=config.ec_curve,
        ))

    def profile_for(self, role: str) -> SigningProfile:
        """
        Get the signing profile for a role.

        Raises:
            UnknownRoleError: If the role is not one of the fixed profiles
        """
        try:
            return self._profiles[role]
        except (KeyError, TypeError):
            raise UnknownRoleError(
                f"Unknown certificate role '{role}'. Expected one of: {', '.join(self.roles())}",
                role=str(role),
                operation="profile_for"
            )

    def roles(self) -> List[str]:
        return list(self._profiles)

    def leaf_roles(self) -> List[str]:
        return [name for name, profile in self._profiles.items() if profile.is_leaf]
