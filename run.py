import argparse
import datetime
import ipaddress
import os
import socket

import uvicorn
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID


def get_lan_ip():
    # Phones on the same network need a routable address in the QR page URL
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"


def generate_self_signed_cert(cert_file, key_file, hostnames):
    if os.path.exists(cert_file) and os.path.exists(key_file):
        print("Using existing TLS certificate.")
        return

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "qrlogin-dev")])
    now = datetime.datetime.now(datetime.timezone.utc)
    san = []
    for host in hostnames:
        try:
            san.append(x509.IPAddress(ipaddress.ip_address(host)))
        except ValueError:
            san.append(x509.DNSName(host))

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=365))
        .add_extension(x509.SubjectAlternativeName(san), critical=False)
        .sign(key, hashes.SHA256())
    )

    with open(key_file, "wb") as f:
        f.write(key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ))
    with open(cert_file, "wb") as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))
    print("Generated self-signed TLS certificate.")


def main():
    parser = argparse.ArgumentParser(description="Run the QR login handshake server")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--no-tls", action="store_true", help="serve plain HTTP (local testing only)")
    args = parser.parse_args()

    lan_ip = get_lan_ip()
    ssl_kwargs = {}
    scheme = "http"
    if not args.no_tls:
        generate_self_signed_cert("cert.pem", "key.pem", ["localhost", "127.0.0.1", lan_ip])
        ssl_kwargs = {"ssl_keyfile": "key.pem", "ssl_certfile": "cert.pem"}
        scheme = "https"

    print("=" * 60)
    print(f"LAN URL:  {scheme}://{lan_ip}:{args.port}/login")
    print(f"Local:    {scheme}://127.0.0.1:{args.port}/login")
    print("=" * 60)

    uvicorn.run("qrlogin.main:app", host="0.0.0.0", port=args.port, **ssl_kwargs)


if __name__ == "__main__":
    main()
