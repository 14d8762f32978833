from __future__ import annotations

from typing import Dict, List


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "Plataforma Licitacoes",
    "subscription": "Assinatura",
    "plan": "Plano",
    "charge": "Cobranca",
    "workspace": "Workspace",
}


SUBSCRIPTION_STATUS_GROUP: List[Dict[str, str]] = [
    {
        "key": "pendente",
        "label": "Pendente",
        "description": "Assinatura aguardando confirmacao do primeiro pagamento.",
    },
    {
        "key": "ativa",
        "label": "Ativa",
        "description": "Assinatura paga e liberando acesso ao produto.",
    },
    {
        "key": "suspensa",
        "label": "Suspensa",
        "description": "Pagamento recusado ou estornado; acesso bloqueado ate nova cobranca.",
    },
    {
        "key": "cancelada",
        "label": "Cancelada",
        "description": "Assinatura encerrada por acao do cliente ou do administrador.",
    },
    {
        "key": "expirada",
        "label": "Expirada",
        "description": "Periodo e carencia encerrados sem renovacao.",
    },
]


PAYMENT_STATUS_LABELS: Dict[str, str] = {
    "pending": "Pendente",
    "in_process": "Em analise",
    "approved": "Aprovado",
    "rejected": "Recusado",
    "cancelled": "Cancelado",
    "refunded": "Estornado",
}


# Provider status_detail codes shown to the payer after a declined or held charge.
PAYMENT_STATUS_DETAIL_MESSAGES: Dict[str, str] = {
    "cc_rejected_insufficient_amount": (
        "Pagamento recusado: saldo ou limite insuficiente no cartao. "
        "Verifique o limite disponivel ou tente outro cartao."
    ),
    "cc_rejected_call_for_authorize": (
        "Pagamento recusado: e necessario autorizar o pagamento com o banco emissor."
    ),
    "cc_rejected_bad_filled_card_number": "Pagamento recusado: numero do cartao invalido.",
    "cc_rejected_bad_filled_date": "Pagamento recusado: data de validade do cartao invalida.",
    "cc_rejected_bad_filled_other": "Pagamento recusado: dados do cartao incorretos.",
    "cc_rejected_bad_filled_security_code": "Pagamento recusado: codigo de seguranca (CVV) invalido.",
    "cc_rejected_card_error": "Pagamento recusado: erro no cartao. Tente outro cartao.",
    "cc_rejected_card_disabled": "Pagamento recusado: cartao desabilitado. Contate o banco emissor.",
    "cc_rejected_duplicated_payment": "Pagamento recusado: este pagamento ja foi processado anteriormente.",
    "cc_rejected_high_risk": (
        "Pagamento recusado: transacao considerada de alto risco. Use outro meio de pagamento."
    ),
    "cc_rejected_insufficient_data": "Pagamento recusado: dados insuficientes do cartao.",
    "cc_rejected_invalid_installments": "Pagamento recusado: numero de parcelas invalido para este cartao.",
    "cc_rejected_max_attempts": "Pagamento recusado: muitas tentativas. Aguarde alguns minutos.",
    "cc_rejected_blacklist": "Pagamento recusado: cartao nao autorizado.",
    "cc_rejected_other_reason": "Pagamento recusado pelo banco emissor.",
    "cc_rejected": "Pagamento recusado pelo banco emissor. Verifique os dados do cartao.",
    "pending_contingency": "Pagamento pendente: estamos analisando sua transacao.",
    "pending_review_manual": "Pagamento pendente: sua transacao esta em revisao manual.",
    "pending_waiting_payment": "Pagamento pendente: aguardando a quitacao do PIX ou boleto.",
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "subscription_created": "Assinatura criada.",
        "subscription_activated": "Pagamento aprovado. Assinatura ativa.",
        "subscription_renewed": "Assinatura renovada.",
        "subscription_cancelled": "Assinatura cancelada.",
        "plan_changed": "Plano alterado.",
        "payment_pending": "Pagamento pendente. A confirmacao chegara em breve.",
    },
    "error": {
        "action_invalid": "Acao invalida para esta operacao.",
        "amount_invalid": "Valor invalido.",
        "billing_cycle_invalid": "Ciclo de cobranca invalido. Use mensal ou anual.",
        "card_token_forbidden": "Token do cartao nao deve ser enviado para PIX ou boleto.",
        "card_token_required": "Token do cartao e obrigatorio para pagamento com cartao.",
        "charge_in_progress": "Ja existe uma cobranca em andamento com outro meio de pagamento.",
        "concurrency_conflict": "A assinatura foi alterada por outra operacao. Tente novamente.",
        "currency_invalid": "Moeda invalida.",
        "currency_mismatch": "Moedas diferentes nao podem ser combinadas.",
        "description_required": "Descricao obrigatoria para continuar.",
        "installments_invalid": "Numero de parcelas invalido.",
        "not_found": "Registro nao encontrado.",
        "payer_email_invalid": "Email do pagador invalido.",
        "payer_tax_id_invalid": "CPF ou CNPJ do pagador invalido.",
        "payment_could_not_be_confirmed": (
            "Nao foi possivel confirmar o pagamento agora. Vamos tentar novamente automaticamente."
        ),
        "payment_method_invalid": "Meio de pagamento invalido.",
        "payment_rejected": "Pagamento recusado.",
        "payment_gateway_unavailable": (
            "Nao conseguimos falar com o provedor de pagamento agora. Tente novamente em instantes."
        ),
        "plan_not_found": "Plano nao encontrado.",
        "plan_unchanged": "A assinatura ja esta neste plano e ciclo.",
        "rate_limit_exceeded": "Muitas requisicoes. Tente novamente em instantes.",
        "renewal_months_invalid": "Quantidade de meses para renovacao invalida.",
        "subscription_not_found": "Assinatura nao encontrada.",
        "subscription_transition_invalid": "Esta acao nao e permitida para o status atual da assinatura.",
        "tenant_required": "Informe o workspace da operacao.",
        "unexpected_error": "Nao foi possivel concluir a operacao. Tente novamente em instantes.",
        "webhook_payload_invalid": "Notificacao invalida.",
        "webhook_provider_unknown": "Provedor de pagamento desconhecido.",
        "webhook_signature_invalid": "Assinatura da notificacao invalida.",
    },
    "notification": {
        "subscription_activated": "Sua assinatura do plano {plan_id} esta ativa ate {period_end}.",
        "subscription_suspended": "Sua assinatura foi suspensa: {reason}",
        "subscription_renewed": "Sua assinatura foi renovada ate {period_end}.",
        "subscription_cancelled": "Sua assinatura foi cancelada.",
        "subscription_expired": "Sua assinatura expirou. Renove para recuperar o acesso.",
        "subscription_grace_started": (
            "Sua assinatura venceu em {period_end}. O acesso segue liberado ate {grace_end}."
        ),
        "renewal_payment_failed": "Nao conseguimos cobrar a renovacao: {reason}",
    },
}


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def notification_message(key: str, **params: object) -> str:
    template = get_message("notification", key)
    try:
        return template.format(**params)
    except (KeyError, IndexError):
        return template


def payment_status_detail_message(status_detail: str | None) -> str:
    detail = str(status_detail or "").strip()
    if not detail:
        return "Nao foi possivel processar o pagamento. Tente novamente ou entre em contato com o suporte."
    known = PAYMENT_STATUS_DETAIL_MESSAGES.get(detail)
    if known:
        return known
    return f"Pagamento recusado: {detail}. Entre em contato com o suporte se o problema persistir."


def subscription_status_label(status: str | None) -> str:
    key = str(status or "").strip().lower()
    for item in SUBSCRIPTION_STATUS_GROUP:
        if item["key"] == key:
            return item["label"]
    return key or "-"


def payment_status_label(status: str | None) -> str:
    key = str(status or "").strip().lower()
    return PAYMENT_STATUS_LABELS.get(key, key or "-")
