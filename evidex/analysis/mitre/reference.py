"""
Evidex MITRE ATT&CK Reference Data

Read-only technique and tactic tables used by the mapper. Loaded from an
ATT&CK STIX bundle when one is configured, otherwise from the embedded
Enterprise subset below.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


# Tactic order in ATT&CK matrix
TACTIC_ORDER = (
    "reconnaissance",
    "resource-development",
    "initial-access",
    "execution",
    "persistence",
    "privilege-escalation",
    "defense-evasion",
    "credential-access",
    "discovery",
    "lateral-movement",
    "collection",
    "command-and-control",
    "exfiltration",
    "impact",
)

# Base severity per tactic short name
TACTIC_SEVERITY = MappingProxyType({
    "impact": 95,
    "exfiltration": 90,
    "privilege-escalation": 85,
    "command-and-control": 85,
    "credential-access": 80,
    "execution": 80,
    "defense-evasion": 75,
    "initial-access": 70,
    "lateral-movement": 70,
    "collection": 60,
    "persistence": 60,
    "discovery": 40,
})

DEFAULT_TACTIC_SEVERITY = 50


def normalize_tactic_key(name: str) -> str:
    """'Credential Access', 'credential_access' and 'credential-access' all map to 'credentialaccess'."""
    return "".join(ch for ch in name.lower() if ch not in " -_")


@dataclass(frozen=True)
class TechniqueInfo:
    id: str
    name: str
    description: str = ""
    tactics: Tuple[str, ...] = ()  # tactic short names


@dataclass(frozen=True)
class TacticInfo:
    id: str
    name: str
    short_name: str


@dataclass(frozen=True)
class ReferenceData:
    """
    Immutable ATT&CK lookup tables.

    Shared by every mapping run; nothing here is modified after construction.
    """
    techniques: Mapping[str, TechniqueInfo]
    tactics: Mapping[str, TacticInfo]
    source: str = "embedded"

    @classmethod
    def build(
        cls,
        techniques: Dict[str, TechniqueInfo],
        tactics: Dict[str, TacticInfo],
        source: str = "embedded",
    ) -> "ReferenceData":
        return cls(
            techniques=MappingProxyType(dict(techniques)),
            tactics=MappingProxyType(dict(tactics)),
            source=source,
        )

    def get_technique(self, technique_id: str) -> Optional[TechniqueInfo]:
        return self.techniques.get(technique_id.upper())

    def technique_name(self, technique_id: str) -> str:
        info = self.get_technique(technique_id)
        return info.name if info else f"Technique {technique_id.upper()}"

    def technique_description(self, technique_id: str) -> str:
        info = self.get_technique(technique_id)
        return info.description if info else ""

    def tactics_for(self, technique_id: str) -> Tuple[str, ...]:
        """
        Display names of the tactics a technique belongs to.

        Sub-techniques not listed on their own inherit the parent's tactics.
        """
        info = self.get_technique(technique_id)
        if info is None and "." in technique_id:
            info = self.get_technique(technique_id.split(".")[0])
        if info is None:
            return ()
        return tuple(self.tactic_name(short_name) for short_name in info.tactics)

    def _find_tactic(self, tactic: str) -> Optional[TacticInfo]:
        key = normalize_tactic_key(tactic)
        for info in self.tactics.values():
            if normalize_tactic_key(info.short_name) == key or normalize_tactic_key(info.name) == key:
                return info
        return None

    def tactic_name(self, tactic: str) -> str:
        info = self._find_tactic(tactic)
        return info.name if info else tactic

    def tactic_id(self, tactic: str) -> str:
        info = self._find_tactic(tactic)
        return info.id if info else ""

    def tactic_rank(self, tactic: str) -> int:
        """Position of a tactic in the ATT&CK matrix; unknown tactics sort last."""
        key = normalize_tactic_key(tactic)
        for index, short_name in enumerate(TACTIC_ORDER):
            if normalize_tactic_key(short_name) == key:
                return index
        return len(TACTIC_ORDER)

    def tactic_severity(self, tactic: str) -> int:
        key = normalize_tactic_key(tactic)
        for short_name, severity in TACTIC_SEVERITY.items():
            if normalize_tactic_key(short_name) == key:
                return severity
        return DEFAULT_TACTIC_SEVERITY

    def technique_count_for_tactic(self, tactic: str) -> int:
        """Number of parent techniques the reference lists under a tactic."""
        info = self._find_tactic(tactic)
        if info is None:
            return 0
        return sum(
            1 for technique in self.techniques.values()
            if "." not in technique.id and info.short_name in technique.tactics
        )


def _embedded_techniques() -> Dict[str, TechniqueInfo]:
    entries = [
        ("T1110", "Brute Force", ("credential-access",)),
        ("T1110.001", "Password Guessing", ("credential-access",)),
        ("T1110.003", "Password Spraying", ("credential-access",)),
        ("T1059", "Command and Scripting Interpreter", ("execution",)),
        ("T1059.001", "PowerShell", ("execution",)),
        ("T1059.003", "Windows Command Shell", ("execution",)),
        ("T1059.004", "Unix Shell", ("execution",)),
        ("T1078", "Valid Accounts", ("defense-evasion", "persistence", "privilege-escalation", "initial-access")),
        ("T1046", "Network Service Discovery", ("discovery",)),
        ("T1003", "OS Credential Dumping", ("credential-access",)),
        ("T1003.001", "LSASS Memory", ("credential-access",)),
        ("T1003.008", "/etc/passwd and /etc/shadow", ("credential-access",)),
        ("T1021", "Remote Services", ("lateral-movement",)),
        ("T1021.001", "Remote Desktop Protocol", ("lateral-movement",)),
        ("T1021.004", "SSH", ("lateral-movement",)),
        ("T1048", "Exfiltration Over Alternative Protocol", ("exfiltration",)),
        ("T1486", "Data Encrypted for Impact", ("impact",)),
        ("T1070", "Indicator Removal", ("defense-evasion",)),
        ("T1070.001", "Clear Windows Event Logs", ("defense-evasion",)),
        ("T1070.002", "Clear Linux or Mac System Logs", ("defense-evasion",)),
        ("T1055", "Process Injection", ("defense-evasion", "privilege-escalation")),
        ("T1053", "Scheduled Task/Job", ("execution", "persistence", "privilege-escalation")),
        ("T1547", "Boot or Logon Autostart Execution", ("persistence", "privilege-escalation")),
        ("T1547.001", "Registry Run Keys / Startup Folder", ("persistence", "privilege-escalation")),
        ("T1087", "Account Discovery", ("discovery",)),
        ("T1098", "Account Manipulation", ("persistence", "privilege-escalation")),
        ("T1136", "Create Account", ("persistence",)),
        ("T1543", "Create or Modify System Process", ("persistence", "privilege-escalation")),
        ("T1548", "Abuse Elevation Control Mechanism", ("privilege-escalation", "defense-evasion")),
        ("T1548.003", "Sudo and Sudo Caching", ("privilege-escalation", "defense-evasion")),
        ("T1071", "Application Layer Protocol", ("command-and-control",)),
        ("T1105", "Ingress Tool Transfer", ("command-and-control",)),
        ("T1190", "Exploit Public-Facing Application", ("initial-access",)),
        ("T1566", "Phishing", ("initial-access",)),
        ("T1005", "Data from Local System", ("collection",)),
        ("T1595", "Active Scanning", ("reconnaissance",)),
        ("T1583", "Acquire Infrastructure", ("resource-development",)),
    ]
    return {
        tech_id: TechniqueInfo(id=tech_id, name=name, tactics=tactics)
        for tech_id, name, tactics in entries
    }


def _embedded_tactics() -> Dict[str, TacticInfo]:
    entries = [
        ("reconnaissance", "TA0043", "Reconnaissance"),
        ("resource-development", "TA0042", "Resource Development"),
        ("initial-access", "TA0001", "Initial Access"),
        ("execution", "TA0002", "Execution"),
        ("persistence", "TA0003", "Persistence"),
        ("privilege-escalation", "TA0004", "Privilege Escalation"),
        ("defense-evasion", "TA0005", "Defense Evasion"),
        ("credential-access", "TA0006", "Credential Access"),
        ("discovery", "TA0007", "Discovery"),
        ("lateral-movement", "TA0008", "Lateral Movement"),
        ("collection", "TA0009", "Collection"),
        ("command-and-control", "TA0011", "Command and Control"),
        ("exfiltration", "TA0010", "Exfiltration"),
        ("impact", "TA0040", "Impact"),
    ]
    return {
        short_name: TacticInfo(id=tactic_id, name=name, short_name=short_name)
        for short_name, tactic_id, name in entries
    }


def embedded_reference_data() -> ReferenceData:
    """The built-in Enterprise subset."""
    return ReferenceData.build(_embedded_techniques(), _embedded_tactics())


def _external_id(obj: Dict) -> Optional[str]:
    for ref in obj.get("external_references", []):
        if ref.get("source_name") == "mitre-attack":
            return ref.get("external_id")
    return None


def parse_stix_bundle(data: Dict, source: str = "stix") -> ReferenceData:
    """
    Build reference data from an ATT&CK STIX bundle.

    Args:
        data: Parsed bundle with an "objects" list
        source: Label recorded on the result

    Returns:
        ReferenceData; tactics missing from the bundle fall back to the embedded set
    """
    techniques: Dict[str, TechniqueInfo] = {}
    tactics: Dict[str, TacticInfo] = {}

    for obj in data.get("objects", []):
        obj_type = obj.get("type")
        if obj.get("revoked") or obj.get("x_mitre_deprecated"):
            continue

        if obj_type == "attack-pattern":
            tech_id = _external_id(obj)
            if not tech_id:
                continue
            phases = tuple(
                phase.get("phase_name")
                for phase in obj.get("kill_chain_phases", [])
                if phase.get("kill_chain_name") == "mitre-attack" and phase.get("phase_name")
            )
            techniques[tech_id.upper()] = TechniqueInfo(
                id=tech_id.upper(),
                name=obj.get("name", ""),
                description=obj.get("description", ""),
                tactics=phases,
            )

        elif obj_type == "x-mitre-tactic":
            tactic_id = _external_id(obj)
            short_name = obj.get("x_mitre_shortname", "")
            if tactic_id and short_name:
                tactics[short_name] = TacticInfo(
                    id=tactic_id,
                    name=obj.get("name", ""),
                    short_name=short_name,
                )

    if not tactics:
        tactics = _embedded_tactics()

    return ReferenceData.build(techniques, tactics, source=source)


def load_reference_data(path: Optional[str] = None) -> ReferenceData:
    """
    Load ATT&CK reference data.

    Args:
        path: Path to an ATT&CK STIX JSON file; None uses the embedded data

    Returns:
        ReferenceData from the file, or the embedded set if the file is
        missing, unreadable or holds no techniques
    """
    if path:
        attack_path = Path(path)
        if attack_path.exists():
            try:
                with open(attack_path, "r", encoding="utf-8") as f:
                    reference = parse_stix_bundle(json.load(f), source=str(attack_path))
                if reference.techniques:
                    logger.info(f"Loaded {len(reference.techniques)} MITRE techniques from {attack_path}")
                    return reference
                logger.warning(f"No techniques found in {attack_path}")
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load ATT&CK JSON: {e}")

    logger.info("Using embedded MITRE ATT&CK data")
    return embedded_reference_data()
