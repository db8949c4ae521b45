"""
Voucher number and fiscal date resolution.

The authority only accepts the exact next number of each (point of sale,
voucher type) stream, with a date not earlier than the previous voucher's.
The resolver asks the authority first, falls back to the locally suggested
number when it cannot, and recovers from desynchronization by re-querying
once and then probing forward from the local suggestion.

Numbers submitted during one resolution are strictly increasing, and a
number whose authorization outcome is unknown is never reused blindly: it is
looked up first.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

from app.services.fiscal_authority_client import (
    FiscalAuthorityClient,
    VoucherAuthorization,
    parse_afip_date,
)
from app.services.fiscal_config import FiscalConfig
from app.services.fiscal_errors import (
    AmbiguousOutcome,
    AuthorityCallError,
    AuthorityError,
    AuthorityErrorCategory,
    DesynchronizationError,
)


logger = logging.getLogger(__name__)

# Builds the flat voucher data for a (number, fiscal date) pair
VoucherRequestBuilder = Callable[[int, date], Dict[str, Any]]
# Whether (point of sale, voucher type, number) is already recorded locally
VoucherRecordedCheck = Callable[[int, int, int], Awaitable[bool]]
# Runs before every submission of a number
BeforeSubmitHook = Callable[[int], Awaitable[None]]


@dataclass
class VoucherNumberState:
    """Numbering view for one attempt. Never persisted."""
    last_known: Optional[int]
    suggested_next: Optional[int]

    @property
    def candidate(self) -> int:
        if self.last_known is not None:
            return self.last_known + 1
        return self.suggested_next


@dataclass
class ResolvedVoucher:
    """An authorized voucher and the numbering it was authorized with."""
    number: int
    fiscal_date: date
    authorization: VoucherAuthorization
    recovered: bool = False


def _money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


class VoucherNumberResolver:
    """Chooses voucher numbers and submits vouchers for one numbering stream."""

    def __init__(
        self,
        client: FiscalAuthorityClient,
        config: FiscalConfig,
        point_of_sale: int,
        voucher_type: int,
        voucher_recorded: Optional[VoucherRecordedCheck] = None,
        before_submit: Optional[BeforeSubmitHook] = None,
    ):
        self.client = client
        self.config = config
        self.point_of_sale = point_of_sale
        self.voucher_type = voucher_type
        self.voucher_recorded = voucher_recorded
        self.before_submit = before_submit

    async def _recorded_locally(self, number: int) -> bool:
        if self.voucher_recorded is None:
            return False
        return await self.voucher_recorded(self.point_of_sale, self.voucher_type, number)

    async def _create(
        self,
        build_request: VoucherRequestBuilder,
        number: int,
        fiscal_date: date,
    ) -> VoucherAuthorization:
        if self.before_submit is not None:
            await self.before_submit(number)
        return await self.client.create_voucher(build_request(number, fiscal_date))

    async def resolve_state(self, suggested_next: Optional[int] = None) -> VoucherNumberState:
        """
        Ask the authority for the last number, falling back to the local suggestion.

        Raises:
            AuthorityCallError: authority unreachable and no suggestion available
        """
        suggested_next = suggested_next if suggested_next and suggested_next > 0 else None
        try:
            last = await self.client.get_last_voucher(self.point_of_sale, self.voucher_type)
        except AuthorityCallError as e:
            if suggested_next is None:
                raise
            logger.warning(
                f"Falling back to local numbering for PV {self.point_of_sale} type {self.voucher_type}: "
                f"suggested {suggested_next} ({e.message})"
            )
            return VoucherNumberState(last_known=None, suggested_next=suggested_next)
        return VoucherNumberState(last_known=last, suggested_next=suggested_next)

    async def resolve_fiscal_date(self, last_number: Optional[int], desired: date) -> date:
        """
        Use the desired date unless the previous voucher carries a later one.

        A failure to read the previous voucher leaves the desired date in place.
        """
        if not last_number or last_number <= 0:
            return desired
        try:
            info = await self.client.get_voucher_info(last_number, self.point_of_sale, self.voucher_type)
        except AuthorityCallError as e:
            logger.info(f"Could not read voucher {last_number} to check its date: {e.message}")
            return desired
        previous = parse_afip_date((info or {}).get("CbteFch"))
        if previous and previous > desired:
            return previous
        return desired

    async def recover_voucher(self, number: int, total: Decimal) -> Optional[ResolvedVoucher]:
        """
        Look up a voucher submitted earlier with an unknown outcome.

        Returns:
            The voucher when it exists upstream with our total and no other
            local invoice carries its number, else None.
        """
        info = await self.client.get_voucher_info(number, self.point_of_sale, self.voucher_type)
        if not info:
            return None
        if _money(info.get("ImpTotal")) != _money(total):
            logger.warning(
                f"Voucher {number} (PV {self.point_of_sale}) exists upstream with total "
                f"{info.get('ImpTotal')}, expected {total}; not adopting it"
            )
            return None
        if await self._recorded_locally(number):
            logger.warning(
                f"Voucher {number} (PV {self.point_of_sale}) is already recorded for another sale; not adopting it"
            )
            return None
        return ResolvedVoucher(
            number=number,
            fiscal_date=parse_afip_date(info.get("CbteFch")) or self.config.today(),
            authorization=VoucherAuthorization(
                cae=str(info.get("CodAutorizacion") or ""),
                cae_expires_on=parse_afip_date(info.get("FchVto")),
                voucher_number=number,
                raw=info,
            ),
            recovered=True,
        )

    async def _authorize(
        self,
        build_request: VoucherRequestBuilder,
        number: int,
        fiscal_date: date,
        total: Decimal,
    ) -> ResolvedVoucher:
        """Submit one number, resolving an ambiguous outcome by querying it."""
        try:
            authorization = await self._create(build_request, number, fiscal_date)
            return ResolvedVoucher(number=number, fiscal_date=fiscal_date, authorization=authorization)
        except AmbiguousOutcome as ambiguous:
            logger.warning(f"Ambiguous outcome authorizing voucher {number}, querying the authority")
            try:
                info = await self.client.get_voucher_info(number, self.point_of_sale, self.voucher_type)
            except AuthorityCallError:
                raise ambiguous

        if info is None:
            # Confirmed absent upstream, so resubmitting the same number is safe
            authorization = await self._create(build_request, number, fiscal_date)
            return ResolvedVoucher(number=number, fiscal_date=fiscal_date, authorization=authorization)

        ours = (
            _money(info.get("ImpTotal")) == _money(total)
            and info.get("CodAutorizacion")
            and not await self._recorded_locally(number)
        )
        if ours:
            logger.info(f"Voucher {number} was authorized despite the lost response, adopting it")
            return ResolvedVoucher(
                number=number,
                fiscal_date=parse_afip_date(info.get("CbteFch")) or fiscal_date,
                authorization=VoucherAuthorization(
                    cae=str(info["CodAutorizacion"]),
                    cae_expires_on=parse_afip_date(info.get("FchVto")),
                    voucher_number=number,
                    raw=info,
                ),
                recovered=True,
            )

        raise DesynchronizationError(
            AuthorityError(
                code="10016",
                message=f"Voucher {number} already exists upstream for another sale",
                category=AuthorityErrorCategory.DESYNCHRONIZATION,
                details={"voucher": info},
            )
        )

    async def submit(
        self,
        build_request: VoucherRequestBuilder,
        total: Decimal,
        suggested_next: Optional[int] = None,
        desired_date: Optional[date] = None,
        recover_number: Optional[int] = None,
    ) -> ResolvedVoucher:
        """
        Authorize one voucher, choosing its number and date.

        Args:
            build_request: Builds the voucher data for a number and date
            total: Voucher total, used to recognize our own voucher upstream
            suggested_next: Locally suggested next number (local max + 1)
            desired_date: Requested fiscal date, defaults to today
            recover_number: Number submitted earlier with an unknown outcome

        Raises:
            AuthorityCallError: unresolved authority failure
            ClaimLostError: raised by the before_submit hook, nothing further is submitted
        """
        suggested_next = suggested_next if suggested_next and suggested_next > 0 else None

        if recover_number:
            recovered = await self.recover_voucher(recover_number, total)
            if recovered:
                logger.info(f"Recovered voucher {recover_number} from a previous ambiguous attempt")
                return recovered

        state = await self.resolve_state(suggested_next)
        number = state.candidate
        fiscal_date = await self.resolve_fiscal_date(number - 1, desired_date or self.config.today())

        try:
            return await self._authorize(build_request, number, fiscal_date, total)
        except DesynchronizationError as e:
            logger.warning(f"Voucher number {number} desynchronized ({e.message}), re-querying the authority")
            last_error: AuthorityCallError = e

        try:
            last = await self.client.get_last_voucher(self.point_of_sale, self.voucher_type)
        except AuthorityCallError as e:
            logger.warning(f"Re-query after desynchronization failed: {e.message}")
            last = None
            last_error = e

        if last is not None:
            number = last + 1
            fiscal_date = await self.resolve_fiscal_date(last, self.config.today())
            try:
                return await self._authorize(build_request, number, fiscal_date, total)
            except DesynchronizationError as e:
                last_error = e

        if suggested_next is None:
            raise last_error

        number = max(number + 1, suggested_next)
        fiscal_date = self.config.today()
        for attempt in range(self.config.probe_max_attempts):
            try:
                resolved = await self._authorize(build_request, number, fiscal_date, total)
                logger.info(f"Voucher authorized by probing at number {number} (attempt {attempt + 1})")
                return resolved
            except DesynchronizationError as e:
                last_error = e
                number += 1

        logger.error(
            f"Probing exhausted {self.config.probe_max_attempts} numbers for PV {self.point_of_sale} "
            f"type {self.voucher_type}"
        )
        raise last_error
