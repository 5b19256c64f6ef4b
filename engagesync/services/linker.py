"""Links synced external records to canonical leads by email."""

import logging
from dataclasses import dataclass
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engagesync.models.database import Call, ExternalContact, Lead, ScoredCall
from engagesync.services.parsers import extract_prospect

logger = logging.getLogger(__name__)


@dataclass
class LinkResult:
    linked: int = 0
    leads_created: int = 0
    done: bool = True


class EntityLinker:
    """
    Sets ``lead_id`` on contacts, calls and scored calls.

    Only rows still unlinked are selected, so repeated runs never rewrite an
    existing link. Missing leads are created lazily and tagged with the
    platform that created them so a reset can purge exactly those.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        platform: str,
        internal_domains: tuple[str, ...] = (),
    ):
        self.session_maker = session_maker
        self.platform = platform
        self.internal_domains = internal_domains

    async def link(self, workspace_id: str, batch_size: int = 500) -> LinkResult:
        """Link one batch of each record kind; ``done`` once nothing linkable is left."""
        result = LinkResult()
        async with self.session_maker() as session:
            try:
                contacts_full = await self._link_contacts(session, workspace_id, batch_size, result)
                calls_full = await self._link_calls(session, workspace_id, batch_size, result)
                scored_full = await self._link_scored_calls(session, workspace_id, batch_size, result)
                await session.commit()
            except IntegrityError as e:
                # Another platform's linker created the same lead concurrently; the next batch finds it
                await session.rollback()
                logger.warning(f"Lead conflict while linking {workspace_id}, retrying next batch: {e}")
                return LinkResult(done=False)

        result.done = not (contacts_full or calls_full or scored_full)
        logger.info(
            f"Linked {result.linked} records for {workspace_id} "
            f"({result.leads_created} leads created, done={result.done})"
        )
        return result

    async def _leads_by_email(self, session: AsyncSession, workspace_id: str, emails: set[str]) -> dict[str, Lead]:
        if not emails:
            return {}
        rows = await session.execute(
            select(Lead).where(Lead.workspace_id == workspace_id, func.lower(Lead.email).in_(emails))
        )
        return {lead.email.lower(): lead for lead in rows.scalars()}

    def _create_lead(self, session: AsyncSession, workspace_id: str, email: str, **fields) -> Lead:
        lead = Lead(workspace_id=workspace_id, email=email, platform=self.platform, **fields)
        session.add(lead)
        return lead

    async def _link_contacts(self, session: AsyncSession, workspace_id: str, batch_size: int, result: LinkResult) -> bool:
        rows = await session.execute(
            select(ExternalContact)
            .where(
                ExternalContact.workspace_id == workspace_id,
                ExternalContact.lead_id.is_(None),
                ExternalContact.email.is_not(None),
            )
            .order_by(ExternalContact.id)
            .limit(batch_size)
        )
        contacts = list(rows.scalars())
        if not contacts:
            return False

        leads = await self._leads_by_email(session, workspace_id, {c.email.lower() for c in contacts})
        for contact in contacts:
            email = contact.email.lower()
            lead = leads.get(email)
            if lead is None:
                lead = self._create_lead(
                    session,
                    workspace_id,
                    email,
                    first_name=contact.first_name,
                    last_name=contact.last_name,
                    company=contact.company,
                    phone_number=contact.phone,
                )
                leads[email] = lead
                result.leads_created += 1
            if contact.platform == "phoneburner" and lead.phoneburner_contact_id is None:
                lead.phoneburner_contact_id = contact.external_id

        await session.flush()
        for contact in contacts:
            contact.lead_id = leads[contact.email.lower()].id
            result.linked += 1
        await session.flush()

        return len(contacts) >= batch_size

    async def _link_calls(self, session: AsyncSession, workspace_id: str, batch_size: int, result: LinkResult) -> bool:
        rows = await session.execute(
            select(Call, ExternalContact.lead_id)
            .join(
                ExternalContact,
                and_(
                    ExternalContact.workspace_id == Call.workspace_id,
                    ExternalContact.external_id == Call.external_contact_id,
                ),
            )
            .where(
                Call.workspace_id == workspace_id,
                Call.lead_id.is_(None),
                ExternalContact.lead_id.is_not(None),
            )
            .order_by(Call.id)
            .limit(batch_size)
        )
        pairs = rows.all()
        for call, lead_id in pairs:
            call.lead_id = lead_id
            result.linked += 1
        return len(pairs) >= batch_size

    async def _link_scored_calls(self, session: AsyncSession, workspace_id: str, batch_size: int, result: LinkResult) -> bool:
        rows = await session.execute(
            select(ScoredCall)
            .where(
                ScoredCall.workspace_id == workspace_id,
                ScoredCall.lead_id.is_(None),
                ScoredCall.prospect_email.is_not(None),
            )
            .order_by(ScoredCall.id)
            .limit(batch_size)
        )
        calls = list(rows.scalars())
        if not calls:
            return False

        leads = await self._leads_by_email(session, workspace_id, {c.prospect_email.lower() for c in calls})
        for call in calls:
            email = call.prospect_email.lower()
            if email not in leads:
                prospect = extract_prospect(
                    call.all_participants, call.host_email, call.call_title, self.internal_domains
                ) or {}
                leads[email] = self._create_lead(
                    session,
                    workspace_id,
                    email,
                    first_name=prospect.get("first_name"),
                    last_name=prospect.get("last_name"),
                    company=prospect.get("company") or call.company_name,
                )
                result.leads_created += 1

        await session.flush()
        for call in calls:
            call.lead_id = leads[call.prospect_email.lower()].id
            result.linked += 1

        return len(calls) >= batch_size
