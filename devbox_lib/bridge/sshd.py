from __future__ import annotations

from .session import RemoteArtifacts


def build_sshd_config(artifacts: RemoteArtifacts) -> str:
    """Render an sshd_config that only accepts the session key over the relay."""

    return "\n".join(
        [
            f"Port {artifacts.sshd_port}",
            "ListenAddress 0.0.0.0",
            "HostKeyAlgorithms ssh-ed25519",
            f"HostKey {artifacts.host_private_key_path}",
            "PasswordAuthentication no",
            "PermitRootLogin no",
            "PubkeyAuthentication yes",
            "ChallengeResponseAuthentication no",
            "KbdInteractiveAuthentication no",
            f"AuthorizedKeysFile {artifacts.authorized_keys_path}",
            f"PidFile {artifacts.sshd_pid_path}",
            "UsePAM no",
            "X11Forwarding no",
            "AllowTcpForwarding no",
            "AllowAgentForwarding no",
            "PermitOpen none",
            "GatewayPorts no",
            "PermitTunnel no",
            "PrintMotd no",
            "Subsystem sftp internal-sftp",
        ]
    )
