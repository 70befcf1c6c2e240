import base64
import binascii
import logging
from jwcrypto import jwk
from jwcrypto.common import JWException
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

logger = logging.getLogger(__name__)


class CryptoUtils:
    @staticmethod
    def verify_raw_signature(jwk_dict: dict, data: str, signature_b64: str) -> bool:
        """
        Checks a paired device's raw signature (base64) over data against the
        public JWK it registered. RS256, PS256 and ES256 keys are accepted.
        """
        try:
            key = jwk.JWK(**jwk_dict)
            sig_bytes = base64.b64decode(signature_b64, validate=True)
            ktype = key.get_op_key('verify')
        except (JWException, ValueError, TypeError, binascii.Error) as e:
            logger.warning(f"Unusable key or signature: {type(e).__name__}: {e}")
            return False

        data_bytes = data.encode('utf-8')
        try:
            if isinstance(ktype, rsa.RSAPublicKey):
                alg = jwk_dict.get('alg')
                if alg == 'RS256' or alg is None:
                    ktype.verify(sig_bytes, data_bytes, padding.PKCS1v15(), hashes.SHA256())
                elif alg == 'PS256':
                    ktype.verify(
                        sig_bytes,
                        data_bytes,
                        padding.PSS(
                            mgf=padding.MGF1(hashes.SHA256()),
                            salt_length=padding.PSS.MAX_LENGTH
                        ),
                        hashes.SHA256()
                    )
                else:
                    logger.error(f"Unsupported RSA alg: {alg}")
                    return False
                return True

            if isinstance(ktype, ec.EllipticCurvePublicKey):
                ktype.verify(sig_bytes, data_bytes, ec.ECDSA(hashes.SHA256()))
                return True

            return False

        except InvalidSignature:
            logger.warning("Device signature did not verify")
            return False
