# pasarctl/services/certs.py
import datetime
import ipaddress
import logging
import os
import shutil

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from pasarctl.core import config

logger = logging.getLogger("Services.Certs")


# ================= SAN 列表 =================

def build_san_list(ipv4='', ipv6='', extra=()):
    """默认 localhost + 127.0.0.1 + 公网 IP + 用户输入，去重排序"""
    entries = {'DNS:localhost', 'IP:127.0.0.1'}
    if ipv4: entries.add(f"IP:{ipv4}")
    if ipv6: entries.add(f"IP:{ipv6}")
    entries.update(e.strip() for e in extra if e and e.strip())
    return sorted(entries)


def _san_extension(san):
    names = []
    for entry in san:
        kind, _, value = entry.partition(':')
        if kind == 'DNS':
            names.append(x509.DNSName(value))
        elif kind == 'IP':
            try:
                names.append(x509.IPAddress(ipaddress.ip_address(value)))
            except ValueError:
                logger.warning(f"⚠️ 跳过无效的 SAN IP: {value}")
    return x509.SubjectAlternativeName(names)


# ================= 自签名证书 =================

def generate_self_signed(cert_path, key_path, common_name, san):
    """RSA 4096 / SHA-256 / 36500 天，私钥权限 600"""
    try:
        key = rsa.generate_private_key(public_exponent=65537, key_size=config.CERT_KEY_SIZE)
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name or 'localhost')])
        now = datetime.datetime.now(datetime.timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days=config.CERT_VALID_DAYS))
            .add_extension(_san_extension(san), critical=False)
            .sign(key, hashes.SHA256())
        )

        for path in (cert_path, key_path):
            os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        # 私钥创建时即为 600
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            ))
        os.chmod(key_path, 0o600)
        with open(cert_path, 'wb') as f:
            f.write(cert.public_bytes(serialization.Encoding.PEM))
    except (ValueError, OSError) as e:
        logger.error(f"❌ 证书生成失败: {e}")
        return False, "Error: Failed to generate certificate"

    san_string = ','.join(san)
    logger.info(f"✅ 自签名证书: {cert_path} ({san_string})")
    return True, f"Certificate generated successfully with SAN: {san_string}"


# ================= 用户提供的证书 =================

def save_pem_input(lines, dest):
    """
    保存用户粘贴的 PEM 内容
    第一行如果是已存在的文件路径，直接复制该文件
    """
    os.makedirs(os.path.dirname(dest) or '.', exist_ok=True)
    lines = list(lines)
    if lines and os.path.isfile(lines[0].strip()):
        shutil.copyfile(lines[0].strip(), dest)
        return dest
    with open(dest, 'w', encoding='utf-8') as f:
        for line in lines:
            f.write(line + "\n")
    return dest
