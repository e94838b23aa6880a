# donations/proofs.py
from django.conf import settings
from django.utils.module_loading import import_string

from .models import DeliveryProof


class ProofStore:
    """Хранилище подтверждений доставки (фото/видео результата)."""

    def has_delivery_proof(self, donation) -> bool:
        raise NotImplementedError

    def list_proof_files(self, donation) -> list:
        raise NotImplementedError

    def validate_path(self, donation, file_path: str) -> None:
        # файл должен лежать в папке своего пожертвования
        if not file_path.startswith(f'{donation.donation_public_id}/'):
            raise ValueError("Файл не относится к этому пожертвованию.")

    def attach(self, donation, file_path: str, *, content_type: str = '', uploaded_by: str = ''):
        raise NotImplementedError


class ModelProofStore(ProofStore):
    # файлы загружает внешний сервис, у нас только ссылки на них
    def has_delivery_proof(self, donation) -> bool:
        return DeliveryProof.objects.filter(donation_id=donation.pk).exists()

    def list_proof_files(self, donation) -> list:
        return [
            {
                'path': p.file_path,
                'content_type': p.content_type,
                'uploaded_by': p.uploaded_by,
                'created_at': p.created_at.isoformat(),
            }
            for p in DeliveryProof.objects.filter(donation_id=donation.pk)
        ]

    def attach(self, donation, file_path: str, *, content_type: str = '', uploaded_by: str = ''):
        self.validate_path(donation, file_path)
        return DeliveryProof.objects.create(
            donation=donation,
            file_path=file_path,
            content_type=content_type,
            uploaded_by=uploaded_by,
        )


def get_proof_store() -> ProofStore:
    return import_string(settings.DONATIONS_PROOF_STORE)()
