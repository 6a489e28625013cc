"""Erros do ciclo de vida dos arquivos.

Os handlers HTTP convertem cada classe num status; nada aqui deve escapar
como 500 genérico.
"""


class DropError(Exception):
    message = "Erro."

    def __init__(self, message=None):
        super().__init__(message or self.message)


class InvalidInput(DropError):
    message = "Requisição inválida."


class BadName(InvalidInput):
    message = "Nome inválido."


class BadLifespan(InvalidInput):
    message = "A expiração precisa ser -1 ou >= 1 segundo."


class BadQuota(InvalidInput):
    message = "A cota precisa ser >= 1."


class TooLarge(DropError):
    message = "Arquivo muito grande."


class AlreadyExists(DropError):
    message = "Esse nome já existe."


class NotFound(DropError):
    # nunca existiu, expirou ou já foi consumido: mesma resposta para o cliente
    message = "Expirado ou cota esgotada."


class Exhausted(NotFound):
    pass


class StorageError(DropError):
    message = "Erro interno de armazenamento."
