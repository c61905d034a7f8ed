"""
Instance hardening script run on first boot.
"""

from shared.errors import ValidationError

AGENT_USER = "agent"
OPEN_PORTS = (22, 80, 443)
BASELINE_PACKAGES = ("curl", "wget", "git", "vim", "htop", "build-essential", "ufw")

_TEMPLATE = """#!/bin/bash
set -euo pipefail

apt-get update
DEBIAN_FRONTEND=noninteractive apt-get upgrade -y
DEBIAN_FRONTEND=noninteractive apt-get install -y {packages}

curl -fsSL https://get.docker.com | bash
systemctl enable docker
systemctl start docker

id -u {user} >/dev/null 2>&1 || useradd -m -s /bin/bash {user}
usermod -aG sudo {user}
usermod -aG docker {user}
echo "{user} ALL=(ALL) NOPASSWD:ALL" > /etc/sudoers.d/{user}
chmod 440 /etc/sudoers.d/{user}

mkdir -p /home/{user}/.ssh
cat > /home/{user}/.ssh/authorized_keys <<'CLAWCLOUD_KEY'
{public_key}
CLAWCLOUD_KEY
chmod 700 /home/{user}/.ssh
chmod 600 /home/{user}/.ssh/authorized_keys
chown -R {user}:{user} /home/{user}/.ssh

sed -i 's/^#\\?PasswordAuthentication.*/PasswordAuthentication no/' /etc/ssh/sshd_config
sed -i 's/^#\\?PermitRootLogin.*/PermitRootLogin no/' /etc/ssh/sshd_config
systemctl restart ssh || systemctl restart sshd

ufw default deny incoming
ufw default allow outgoing
{firewall_rules}
ufw --force enable
"""


def validate_public_key(public_key: str) -> str:
    """Accept a single-line OpenSSH public key."""
    key = public_key.strip()
    if not key.startswith("ssh-") or "\n" in key or "\r" in key or "'" in key:
        raise ValidationError("Invalid SSH public key", {"key_prefix": key[:16]})
    return key


def render_bootstrap_script(public_key: str) -> str:
    """Render the hardening script with the owner's public key injected."""
    return _TEMPLATE.format(
        packages=" ".join(BASELINE_PACKAGES),
        user=AGENT_USER,
        public_key=validate_public_key(public_key),
        firewall_rules="\n".join(f"ufw allow {port}/tcp" for port in OPEN_PORTS),
    )
