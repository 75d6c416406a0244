"""
PayFast Integration Module for TrustWork
South African payment gateway used to fund escrow and pay freelancers

This module builds signed checkout form data, verifies ITN (webhook)
notifications and submits bank payouts.

Configuration Required:
- PAYFAST_MERCHANT_ID: Your PayFast merchant ID
- PAYFAST_MERCHANT_KEY: Your PayFast merchant key
- PAYFAST_PASSPHRASE: Passphrase set on the PayFast dashboard (optional but recommended)
- PAYFAST_SANDBOX: Set to 'true' for sandbox mode
"""

import os
import hashlib
import hmac
import uuid
import requests
from datetime import datetime
from typing import Dict, Optional, Any
from urllib.parse import quote_plus

PAYMENT_STATUSES = ('COMPLETE', 'FAILED', 'PENDING', 'CANCELLED')


class PayFastConfig:
    """PayFast configuration settings"""
    SANDBOX_PROCESS_URL = "https://sandbox.payfast.co.za/eng/process"
    PRODUCTION_PROCESS_URL = "https://www.payfast.co.za/eng/process"
    SANDBOX_API_URL = "https://sandbox.payfast.co.za"
    PRODUCTION_API_URL = "https://api.payfast.co.za"

    def __init__(self):
        self.merchant_id = os.environ.get('PAYFAST_MERCHANT_ID', '')
        self.merchant_key = os.environ.get('PAYFAST_MERCHANT_KEY', '')
        self.passphrase = os.environ.get('PAYFAST_PASSPHRASE', '')
        self.is_sandbox = os.environ.get('PAYFAST_SANDBOX', 'true').lower() == 'true'

    @property
    def process_url(self) -> str:
        return self.SANDBOX_PROCESS_URL if self.is_sandbox else self.PRODUCTION_PROCESS_URL

    @property
    def api_url(self) -> str:
        return self.SANDBOX_API_URL if self.is_sandbox else self.PRODUCTION_API_URL

    @property
    def is_configured(self) -> bool:
        return bool(self.merchant_id and self.merchant_key)


def generate_signature(data: Dict[str, Any], passphrase: Optional[str] = None) -> str:
    """
    Generate a PayFast MD5 signature

    Keys are sorted, empty values and any existing signature are skipped,
    values are url-encoded with spaces as '+', and the passphrase is
    appended last when set.
    """
    pairs = []
    for key in sorted(data.keys()):
        value = data[key]
        if key == 'signature' or value is None or str(value) == '':
            continue
        pairs.append(f"{key}={quote_plus(str(value).strip())}")
    payload = '&'.join(pairs)
    if passphrase:
        payload += f"&passphrase={quote_plus(passphrase.strip())}"
    return hashlib.md5(payload.encode('utf-8')).hexdigest()


class PayFastClient:
    """
    PayFast client for escrow funding and payouts

    Usage:
        client = PayFastClient()
        if client.is_available():
            form = client.build_payment_form(
                amount=1500.00,
                payment_id="ESC-12",
                item_name="Logo design",
                email_address="client@example.com",
                return_url="https://yoursite.com/payment/success",
                cancel_url="https://yoursite.com/payment/cancel",
                notify_url="https://yoursite.com/api/payfast/webhook"
            )
    """

    def __init__(self, config: Optional[PayFastConfig] = None):
        self.config = config or PayFastConfig()

    def is_available(self) -> bool:
        """Check if PayFast is properly configured"""
        return self.config.is_configured

    def build_payment_form(
        self,
        amount: float,
        payment_id: str,
        item_name: str,
        email_address: str,
        return_url: str,
        cancel_url: str,
        notify_url: str,
        name_first: Optional[str] = None,
        custom_str1: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Build the signed form fields the browser posts to PayFast

        Returns:
            Dict with process_url and fields, or error details
        """
        if not self.is_available():
            return {
                'success': False,
                'error': 'PayFast is not configured. Please set PAYFAST_MERCHANT_ID and PAYFAST_MERCHANT_KEY.',
                'error_code': 'NOT_CONFIGURED'
            }

        fields = {
            'merchant_id': self.config.merchant_id,
            'merchant_key': self.config.merchant_key,
            'return_url': return_url,
            'cancel_url': cancel_url,
            'notify_url': notify_url,
            'name_first': name_first,
            'email_address': email_address,
            'm_payment_id': payment_id,
            'amount': f"{amount:.2f}",
            'item_name': item_name[:100],
            'custom_str1': custom_str1
        }
        fields = {k: v for k, v in fields.items() if v not in (None, '')}
        fields['signature'] = generate_signature(fields, self.config.passphrase)

        return {
            'success': True,
            'process_url': self.config.process_url,
            'fields': fields
        }

    def verify_webhook_signature(self, payload: Dict[str, Any]) -> bool:
        """
        Verify the signature on an ITN notification

        Args:
            payload: Posted form data including 'signature'
        """
        signature = payload.get('signature')
        if not signature:
            return False
        expected = generate_signature(payload, self.config.passphrase)
        return hmac.compare_digest(expected, signature)

    def validate_notification(self, payload: Dict[str, Any], expected_amount: float) -> Dict[str, Any]:
        """Check signature, merchant and amount of an ITN before trusting it"""
        if not self.verify_webhook_signature(payload):
            return {'valid': False, 'error': 'Invalid signature'}
        if payload.get('merchant_id') != self.config.merchant_id:
            return {'valid': False, 'error': 'Merchant mismatch'}
        try:
            gross = float(payload.get('amount_gross', 0))
        except (TypeError, ValueError):
            return {'valid': False, 'error': 'Invalid amount'}
        if abs(gross - expected_amount) > 0.01:
            return {'valid': False, 'error': 'Amount mismatch'}
        status = payload.get('payment_status')
        if status not in PAYMENT_STATUSES:
            return {'valid': False, 'error': f'Unknown payment status: {status}'}
        return {'valid': True, 'payment_status': status, 'pf_payment_id': payload.get('pf_payment_id')}

    def create_payout(self, amount: float, bank_account, reference: str) -> Dict[str, Any]:
        """
        Pay a freelancer's verified bank account

        In sandbox mode no request is made and a sandbox reference is returned.

        Returns:
            Dict with success and reference, or error details
        """
        if not self.is_available():
            return {
                'success': False,
                'error': 'PayFast is not configured',
                'error_code': 'NOT_CONFIGURED'
            }

        data = {
            'merchant_id': self.config.merchant_id,
            'merchant_key': self.config.merchant_key,
            'timestamp': datetime.utcnow().isoformat(),
            'amount': f"{amount:.2f}",
            'bank_name': bank_account.bank_name,
            'account_number': bank_account.account_number,
            'branch_code': bank_account.branch_code,
            'account_holder': bank_account.account_holder_name,
            'reference': reference
        }
        data['signature'] = generate_signature(data, self.config.passphrase)

        if self.config.is_sandbox:
            return {
                'success': True,
                'reference': f"SB-{int(datetime.utcnow().timestamp())}-{uuid.uuid4().hex[:9]}",
                'sandbox': True
            }

        try:
            response = requests.post(f"{self.config.api_url}/eng/process/payout", data=data, timeout=30)
            response.raise_for_status()
            result = response.json()
        except requests.exceptions.RequestException as e:
            return {
                'success': False,
                'error': str(e),
                'error_code': 'REQUEST_FAILED'
            }
        except ValueError:
            return {
                'success': False,
                'error': 'Invalid response from PayFast',
                'error_code': 'INVALID_RESPONSE'
            }

        if result.get('status') == 'success':
            return {
                'success': True,
                'reference': result.get('transaction_id') or result.get('reference')
            }
        return {
            'success': False,
            'error': result.get('message', 'Unknown PayFast error'),
            'error_code': 'PAYOUT_FAILED'
        }


def get_payfast_client() -> PayFastClient:
    """Get PayFast client instance"""
    return PayFastClient()
