"""Translation between the client dialect and the CryptoNote pool dialect.

Inbound (client -> pool):

    mining.subscribe [wallet(.worker)]      -> login {login, pass, agent, rigid}
    mining.authorize [user, pass]           -> answered locally with true
    mining.submit [worker, job, nonce, res] -> submit {id, job_id, nonce, result}
    mining.get_job / getjob                 -> getjob {id}
    anything else                           -> forwarded as-is

Outbound (pool -> client):

    job notification        -> mining.notify
    login response          -> subscribe result [[["mining.notify", sid]], sid, 4]
    submit response         -> true, or error carrying the pool's reason
    getjob response         -> mining.notify when it carries a job
    unmatched error         -> error response with id null
    unmatched result        -> dropped
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, Optional

from loguru import logger

from cryptonote_ws_proxy.cryptonote.messages import (
    STATUS_OK,
    CryptoNoteMessage,
    CryptoNoteMethods,
    CryptoNoteNotification,
    CryptoNoteResponse,
    Job,
)
from cryptonote_ws_proxy.proxy.constants import EXTRANONCE2_SIZE, MAX_ERROR_MESSAGE_LENGTH
from cryptonote_ws_proxy.proxy.difficulty import DEFAULT_TARGET, parse_target, target_to_difficulty
from cryptonote_ws_proxy.proxy.events import Effect, SendClient
from cryptonote_ws_proxy.stratum.messages import (
    StratumErrors,
    StratumMessage,
    StratumMethods,
    StratumNotification,
    StratumRequest,
    error_object,
)

if TYPE_CHECKING:
    from cryptonote_ws_proxy.config.models import PoolConfig
    from cryptonote_ws_proxy.proxy.session import PendingRequest, Session

MAX_MINER_STRING_LENGTH = 256


def _sanitize_miner_string(value: Any, max_length: int = MAX_MINER_STRING_LENGTH) -> str:
    """
    Sanitize a string provided by a client before it is logged or forwarded.

    Args:
        value: Raw value from the client.
        max_length: Maximum allowed length.

    Returns:
        Sanitized string.
    """
    if not value:
        return ""
    value = str(value)[:max_length]
    return "".join(c if c.isprintable() or c == " " else "?" for c in value)


def _truncate(message: str, max_length: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    if len(message) > max_length:
        return message[:max_length] + "..."
    return message


def split_login(value: str, default_worker: str) -> tuple[str, str]:
    """
    Split ``wallet.worker`` on the first dot.

    Returns:
        ``(wallet, worker)``; the worker falls back to ``default_worker``.
    """
    wallet, _, worker = value.partition(".")
    return wallet, worker or default_worker


def job_notify(job: Job, pool: PoolConfig, now: float) -> dict:
    """Build the client-facing ``mining.notify`` for a pool job."""
    return {
        "id": None,
        "method": StratumMethods.NOTIFY,
        "params": [
            job.job_id,
            job.blob or "",
            "",
            "",
            [],
            job.algo or pool.algorithm,
            job.target or DEFAULT_TARGET,
            format(int(now), "x"),
            True,
        ],
    }


# -- Client -> pool -----------------------------------------------------


def translate_inbound(session: Session, message: StratumMessage) -> List[Effect]:
    """
    Translate one client message into effects.

    Args:
        session: Session the message belongs to.
        message: Parsed client message.

    Returns:
        Effects: upstream sends (or queue notices) and/or direct replies.
    """
    if isinstance(message, StratumRequest):
        return _translate_request(session, message.method, message.params, message.id)
    if isinstance(message, StratumNotification):
        return _translate_request(session, message.method, message.params, None)

    logger.debug(f"[{session.name}] Ignoring response frame from client: {message}")
    return []


def _translate_request(session: Session, method: str, params: list, msg_id: Any) -> List[Effect]:
    if method == StratumMethods.SUBSCRIBE:
        return _subscribe(session, params, msg_id)
    if method == StratumMethods.AUTHORIZE:
        # CryptoNote has no separate authorization step
        return [session.reply(msg_id, True)]
    if method == StratumMethods.SUBMIT:
        return _submit(session, params, msg_id)
    if method in StratumMethods.GET_JOB_METHODS:
        return _getjob(session, method, msg_id)

    logger.warning(f"[{session.name}] Unknown client method '{method}', forwarding as-is")
    return session.send_upstream(method, params, original_method=method, original_id=msg_id)


def _subscribe(session: Session, params: list, msg_id: Any) -> List[Effect]:
    raw = params[0] if params else None
    if not isinstance(raw, str) or not raw.strip():
        logger.warning(f"[{session.name}] Subscribe without wallet address")
        return [session.reply(msg_id, error=error_object(StratumErrors.MISSING_WALLET))]

    wallet, worker = split_login(_sanitize_miner_string(raw.strip()), session.settings.default_worker)
    if not wallet:
        return [session.reply(msg_id, error=error_object(StratumErrors.MISSING_WALLET))]

    session.wallet = wallet
    session.worker = worker
    logger.info(f"[{session.name}] Login as {wallet} (worker {worker})")
    return session.send_upstream(
        CryptoNoteMethods.LOGIN,
        session.login_params(),
        original_method=StratumMethods.SUBSCRIBE,
        original_id=msg_id,
    )


def _submit(session: Session, params: list, msg_id: Any) -> List[Effect]:
    if len(params) != 4:
        logger.warning(f"[{session.name}] Submit with {len(params)} parameters")
        return [session.reply(msg_id, error=error_object(StratumErrors.INVALID_SUBMIT))]

    login_id = session.request_login_id
    if login_id is None:
        logger.warning(f"[{session.name}] Submit before login")
        return [session.reply(msg_id, error=error_object(StratumErrors.NOT_LOGGED_IN))]

    _worker, job_id, nonce, result = params
    if not job_id or not nonce or not result:
        logger.warning(
            f"[{session.name}] Missing submit parameters: "
            f"job_id={job_id!r}, nonce={nonce!r}, result={result!r}"
        )
        return [session.reply(msg_id, error=error_object(StratumErrors.MISSING_SUBMIT))]

    # Counted now; accepted/rejected are settled by the pool's response
    session.submitted += 1
    return session.send_upstream(
        CryptoNoteMethods.SUBMIT,
        {"id": login_id, "job_id": job_id, "nonce": nonce, "result": result},
        original_method=StratumMethods.SUBMIT,
        original_id=msg_id,
    )


def _getjob(session: Session, method: str, msg_id: Any) -> List[Effect]:
    login_id = session.request_login_id
    if login_id is None:
        logger.warning(f"[{session.name}] Job request before login")
        return [session.reply(msg_id, error=error_object(StratumErrors.NOT_LOGGED_IN))]
    return session.send_upstream(
        CryptoNoteMethods.GETJOB,
        {"id": login_id},
        original_method=method,
        original_id=msg_id,
    )


# -- Pool -> client -----------------------------------------------------


def translate_outbound(session: Session, message: CryptoNoteMessage) -> List[Effect]:
    """
    Translate one pool message into effects for the client.

    Responses are matched against the session's pending requests; each
    entry is consumed by the first response carrying its id.
    """
    if isinstance(message, CryptoNoteNotification):
        if message.method == CryptoNoteMethods.JOB:
            job = Job.from_params(message.params)
            if job is None:
                logger.warning(f"[{session.name}] Job notification without job_id")
                return []
            return apply_job(session, job)
        return [SendClient(message.to_dict())]

    if not isinstance(message, CryptoNoteResponse):
        return [SendClient(message.to_dict())]

    pending = session.take_pending(message.id)
    if pending is not None:
        if pending.upstream_method == CryptoNoteMethods.LOGIN:
            return _login_response(session, pending, message)
        if pending.upstream_method == CryptoNoteMethods.SUBMIT:
            return _submit_response(session, pending, message)
        if pending.upstream_method == CryptoNoteMethods.GETJOB:
            return _getjob_response(session, pending, message)
        # Passthrough: map the pool's id back to the client's
        return [session.reply(pending.original_id, message.result, message.error)]

    # Pool ids are never exposed to the client
    if message.is_error:
        text = message.error_message or StratumErrors.POOL_ERROR
        logger.warning(f"[{session.name}] Unsolicited pool error for id {message.id}: {_truncate(text)}")
        return [
            session.reply(
                None,
                error=error_object(text, message.error_code or StratumErrors.GENERIC_CODE),
            )
        ]

    logger.debug(f"[{session.name}] Dropping unmatched pool response id {message.id}")
    return []


def apply_job(session: Session, job: Job) -> List[Effect]:
    """Store a new job on the session and notify the client."""
    if session.settings.strict_targets and parse_target(job.target) is None:
        logger.warning(f"[{session.name}] Dropping job {job.job_id} with invalid target {job.target!r}")
        return [session.status("error", error=StratumErrors.INVALID_JOB, job_id=job.job_id)]

    job.difficulty = target_to_difficulty(job.target)
    session.job = job
    logger.info(
        f"[{session.name}] New job {job.job_id}"
        + (f" height {job.height}" if job.height is not None else "")
        + f" difficulty {job.difficulty}"
    )
    return [SendClient(job_notify(job, session.pool, session.clock()))]


def _login_response(
    session: Session, pending: PendingRequest, message: CryptoNoteResponse
) -> List[Effect]:
    result = message.result if isinstance(message.result, dict) else {}
    login_id = result.get("id")

    if login_id:
        login_id = str(login_id)
        session.mark_logged_in(login_id)
        logger.info(f"[{session.name}] Login successful, session id {login_id}")

        effects: List[Effect] = []
        job_effects: List[Effect] = []
        job = Job.from_params(result.get("job"))
        if job is not None:
            job_effects = apply_job(session, job)

        if pending.from_client:
            effects.append(
                session.reply(
                    pending.original_id,
                    [[[StratumMethods.NOTIFY, login_id]], login_id, EXTRANONCE2_SIZE],
                )
            )
        else:
            effects.append(session.status("logged_in", pool=session.pool_key))
        return effects + job_effects

    if message.is_error:
        text = message.error_message or StratumErrors.LOGIN_FAILED
    else:
        text = StratumErrors.LOGIN_NO_SESSION
    code = message.error_code or StratumErrors.GENERIC_CODE
    session.mark_login_failed()
    logger.error(f"[{session.name}] Login failed: {_truncate(text)}")

    if pending.from_client:
        return [session.reply(pending.original_id, error=error_object(text, code))]
    return [session.status("error", error=text, pool=session.pool_key)]


def _submit_response(
    session: Session, pending: PendingRequest, message: CryptoNoteResponse
) -> List[Effect]:
    result = message.result if isinstance(message.result, dict) else {}

    if result.get("status") == STATUS_OK:
        session.accepted += 1
        logger.info(
            f"[{session.name}] Share accepted ({session.accepted}/{session.submitted})"
        )
        return [session.reply(pending.original_id, True)]

    session.rejected += 1
    reason: Optional[str] = result.get("error") if isinstance(result.get("error"), str) else None
    text = reason or message.error_message or StratumErrors.SHARE_REJECTED
    logger.warning(
        f"[{session.name}] Share rejected: {_truncate(text)} "
        f"({session.rejected}/{session.submitted})"
    )
    return [session.reply(pending.original_id, False, error_object(text))]


def _getjob_response(
    session: Session, pending: PendingRequest, message: CryptoNoteResponse
) -> List[Effect]:
    job = Job.from_params(message.result)
    if job is not None:
        return apply_job(session, job)

    if not pending.from_client:
        # Keepalive acknowledgement
        return []

    if message.is_error:
        text = message.error_message or StratumErrors.POOL_ERROR
        return [
            session.reply(
                pending.original_id,
                error=error_object(text, message.error_code or StratumErrors.GENERIC_CODE),
            )
        ]
    return [session.reply(pending.original_id, message.result)]
