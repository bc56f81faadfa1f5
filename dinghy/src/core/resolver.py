"""Pick the signing identity and provisioning profile for one device.

Filtering happens in a fixed order and the first filter that leaves nothing
behind determines the error:

1. profiles whose application identifier pattern matches (NoMatchingProfile)
2. profiles that authorize the device (NoAuthorizedDevice)
3. profiles that have not expired (AllCandidatesExpired)
4. identities from the same team as a profile (NoIdentity)

Surviving (identity, profile) pairs are ranked by ``candidate_sort_key``:

a. exact application identifier match before wildcard match
b. preferred identity kind first (development, for installing on a device)
c. later profile expiration first
d. identity fingerprint, then profile UUID, then profile path

The last step makes the choice stable between runs when everything else ties.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from dinghy.logger import get_console
from dinghy.src.core.errors import (
    AllCandidatesExpired,
    NoAuthorizedDevice,
    NoIdentity,
    NoMatchingProfile,
)
from dinghy.src.core.models import (
    Device,
    IdentityKind,
    ProvisioningProfile,
    SigningIdentity,
    SigningPlan,
    utcnow,
)


@dataclass(frozen=True)
class Candidate:
    identity: SigningIdentity
    profile: ProvisioningProfile
    exact: bool


def candidate_sort_key(candidate: Candidate, prefer: IdentityKind = IdentityKind.DEVELOPMENT) -> Tuple:
    return (
        0 if candidate.exact else 1,
        0 if candidate.identity.kind is prefer else 1,
        -candidate.profile.expiration_date.timestamp(),
        candidate.identity.fingerprint,
        candidate.profile.uuid,
        str(candidate.profile.path),
    )


def rank_candidates(
    identities: Iterable[SigningIdentity],
    profiles: Iterable[ProvisioningProfile],
    device: Device,
    application_identifier: str,
    now: Optional[datetime] = None,
    prefer: IdentityKind = IdentityKind.DEVELOPMENT,
) -> List[Candidate]:
    """Every valid (identity, profile) pair, best first.

    Raises the ResolutionError of the first filter that came out empty.
    """
    now = now or utcnow()
    identities = list(identities)
    profiles = list(profiles)

    matching = [p for p in profiles if p.matches(application_identifier)]
    if not matching:
        raise NoMatchingProfile(
            application_identifier,
            device.identifier,
            f"No provisioning profile matches application identifier {application_identifier} "
            f"({len(profiles)} profiles checked)",
            candidates=len(profiles),
        )

    authorized = [p for p in matching if p.authorizes(device.identifier)]
    if not authorized:
        raise NoAuthorizedDevice(
            application_identifier,
            device.identifier,
            f"None of the {len(matching)} profiles matching {application_identifier} "
            f"authorizes device {device.identifier}",
            candidates=len(matching),
        )

    current = [p for p in authorized if not p.is_expired(now)]
    if not current:
        latest = max(p.expiration_date for p in authorized)
        raise AllCandidatesExpired(
            application_identifier,
            device.identifier,
            f"All {len(authorized)} profiles authorizing {device.identifier} for "
            f"{application_identifier} have expired (latest expired {latest:%Y-%m-%d})",
            candidates=len(authorized),
        )

    candidates = [
        Candidate(
            identity=identity,
            profile=profile,
            exact=profile.is_exact_match(application_identifier),
        )
        for profile in current
        for identity in identities
        if identity.team_identifier == profile.team_identifier
    ]
    if not candidates:
        teams = ", ".join(sorted({p.team_identifier for p in current}))
        raise NoIdentity(
            application_identifier,
            device.identifier,
            f"No signing identity for team(s) {teams} "
            f"({len(identities)} identities available)",
            candidates=len(current),
        )

    candidates.sort(key=lambda c: candidate_sort_key(c, prefer))
    return candidates


def resolve(
    identities: Sequence[SigningIdentity],
    profiles: Sequence[ProvisioningProfile],
    device: Device,
    application_identifier: str,
    now: Optional[datetime] = None,
    prefer: IdentityKind = IdentityKind.DEVELOPMENT,
) -> SigningPlan:
    """Resolve the signing plan for running application_identifier on device"""
    candidates = rank_candidates(identities, profiles, device, application_identifier, now, prefer)
    best = candidates[0]

    console = get_console()
    console.log(
        f"[green]Signing {application_identifier} for {device.name}:[/] "
        f"{best.identity.name} ({best.identity.fingerprint[:8]}) "
        f"with profile {best.profile.name}"
    )
    if len(candidates) > 1:
        console.log(f"[blue]{len(candidates) - 1} other valid identity/profile pairs ranked lower[/]")

    return SigningPlan(
        identity=best.identity,
        profile=best.profile,
        device=device,
        application_identifier=application_identifier,
    )
